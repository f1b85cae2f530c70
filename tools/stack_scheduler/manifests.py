"""Stack discovery.

Scans a project tree for stack manifests and turns each one into a ``Stack``
keyed by its canonical project path (``/`` for the root, ``/a/b`` for nested
directories). Problems are collected across the whole tree and reported in a
single ``DiscoveryError`` so one invocation shows every broken manifest.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import yaml

from .errors import DiscoveryError

DEFAULT_MANIFEST_NAME = "stack.yaml"


def _deep_merge(base: Any, override: Any) -> Any:
  if isinstance(base, dict) and isinstance(override, dict):
    result = copy.deepcopy(base)
    for key, value in override.items():
      if key in result:
        result[key] = _deep_merge(result[key], value)
      else:
        result[key] = copy.deepcopy(value)
    return result
  return copy.deepcopy(override)


def project_path(root: Path, directory: Path) -> str:
  relative = directory.relative_to(root).as_posix()
  if relative in ("", "."):
    return "/"
  return "/" + relative


@dataclass(frozen=True)
class Stack:
  path: str
  directory: Path
  manifest_path: Path
  id: Optional[str] = None
  name: Optional[str] = None
  description: Optional[str] = None
  after: Tuple[str, ...] = field(default_factory=tuple)

  @property
  def relpath(self) -> str:
    return self.path.lstrip("/") or "."

  def __str__(self) -> str:
    return self.path


class Registry:
  """Immutable set of discovered stacks, iterated in path order."""

  def __init__(self, root: Path, stacks: List[Stack]) -> None:
    self.root = root
    self._stacks: Dict[str, Stack] = {}
    for stack in sorted(stacks, key=lambda candidate: candidate.path):
      if stack.path in self._stacks:
        raise ValueError(f"Duplicate stack path '{stack.path}'.")
      self._stacks[stack.path] = stack

  def __iter__(self) -> Iterator[Stack]:
    return iter(self._stacks.values())

  def __len__(self) -> int:
    return len(self._stacks)

  def __contains__(self, path: object) -> bool:
    return path in self._stacks

  def get(self, path: str) -> Optional[Stack]:
    return self._stacks.get(path)

  def paths(self) -> List[str]:
    return list(self._stacks.keys())


class ManifestRepository:
  def __init__(self, root: Path, manifest_name: str = DEFAULT_MANIFEST_NAME) -> None:
    self._root = root.resolve()
    self._manifest_name = manifest_name

  @property
  def root(self) -> Path:
    return self._root

  def load(self) -> Registry:
    if not self._root.is_dir():
      raise DiscoveryError([(self._root, "project root is not a directory")])

    stacks: List[Stack] = []
    problems: List[Tuple[Path, str]] = []
    ids: Dict[str, Path] = {}

    for manifest_path in self._discover():
      try:
        stack = self._parse_manifest(manifest_path)
      except (OSError, ValueError, yaml.YAMLError) as exc:
        problems.append((manifest_path, str(exc)))
        continue
      if stack.id is not None:
        existing = ids.get(stack.id)
        if existing is not None:
          problems.append(
            (manifest_path, f"stack id '{stack.id}' is already used by {existing}")
          )
          continue
        ids[stack.id] = manifest_path
      stacks.append(stack)

    if problems:
      raise DiscoveryError(problems)
    return Registry(self._root, stacks)

  def _discover(self) -> List[Path]:
    found: List[Path] = []
    for manifest_path in sorted(self._root.rglob(self._manifest_name)):
      if not manifest_path.is_file():
        continue
      relative_parts = manifest_path.parent.relative_to(self._root).parts
      if any(part.startswith(".") for part in relative_parts):
        continue
      found.append(manifest_path)
    return found

  def _parse_manifest(self, manifest_path: Path) -> Stack:
    data = self._load_manifest_data(manifest_path)

    if "stack" not in data:
      raise ValueError("manifest must contain a 'stack' mapping")
    stack_section = data["stack"] or {}
    if not isinstance(stack_section, dict):
      raise ValueError("'stack' must be a mapping")

    stack_id = stack_section.get("id")
    if stack_id is not None and (not isinstance(stack_id, str) or not stack_id):
      raise ValueError("stack.id must be a non-empty string when specified")

    after_raw = stack_section.get("after", [])
    if after_raw is None:
      after_raw = []
    if not isinstance(after_raw, list) or any(not isinstance(item, str) for item in after_raw):
      raise ValueError("stack.after must be a list of strings when specified")

    for key in ("name", "description"):
      value = stack_section.get(key)
      if value is not None and not isinstance(value, str):
        raise ValueError(f"stack.{key} must be a string when specified")

    directory = manifest_path.parent
    return Stack(
      path=project_path(self._root, directory),
      directory=directory,
      manifest_path=manifest_path,
      id=stack_id,
      name=stack_section.get("name"),
      description=stack_section.get("description"),
      after=tuple(after_raw),
    )

  def _load_manifest_data(self, manifest_path: Path, seen: Optional[Set[Path]] = None) -> Dict[str, Any]:
    if seen is None:
      seen = set()

    resolved_manifest_path = manifest_path.resolve()
    if resolved_manifest_path in seen:
      raise ValueError(f"cyclic 'extends' reference detected at {manifest_path}")
    seen.add(resolved_manifest_path)

    with manifest_path.open("r", encoding="utf-8") as handle:
      loaded = yaml.safe_load(handle) or {}

    if not isinstance(loaded, dict):
      raise ValueError(f"{manifest_path} must parse to a mapping")

    extends_value = loaded.pop("extends", None)
    merged: Dict[str, Any] = {}

    if extends_value:
      if isinstance(extends_value, str):
        extends_list = [extends_value]
      elif isinstance(extends_value, list) and all(isinstance(item, str) for item in extends_value):
        extends_list = extends_value
      else:
        raise ValueError("'extends' must be a string or list of strings when specified")

      for entry in extends_list:
        base_path = (manifest_path.parent / entry).resolve()
        if not base_path.is_file():
          raise ValueError(f"extended file '{entry}' was not found")
        merged = _deep_merge(merged, self._load_manifest_data(base_path, seen))

    seen.remove(resolved_manifest_path)
    return _deep_merge(merged, loaded)
