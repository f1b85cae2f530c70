"""Git based change detection.

A stack is changed when any file inside its directory (and not inside a nested
stack) differs from the base ref, or has uncommitted modifications.
"""
from __future__ import annotations

import subprocess
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Set

from .errors import ChangeDetectionError
from .manifests import Registry

DEFAULT_BASE_REF = "origin/main"


def _git(root: Path, *args: str) -> str:
  command = ["git", *args]
  try:
    completed = subprocess.run(command, cwd=root, check=False, capture_output=True, text=True)
  except FileNotFoundError:
    raise ChangeDetectionError("git executable was not found on PATH.") from None
  if completed.returncode != 0:
    raise ChangeDetectionError(
      f"'{' '.join(command)}' failed in {root}: {completed.stderr.strip() or completed.returncode}"
    )
  return completed.stdout


def _status_paths(output: str) -> List[str]:
  """Paths from ``git status --porcelain -z``; renames and copies yield both paths."""
  paths: List[str] = []
  entries = iter(output.split("\0"))
  for entry in entries:
    if len(entry) < 4:
      continue
    status, path = entry[:2], entry[3:]
    paths.append(path)
    if "R" in status or "C" in status:
      source = next(entries, "")
      if source:
        paths.append(source)
  return paths


def changed_files(root: Path, base_ref: str = DEFAULT_BASE_REF) -> List[str]:
  """Files changed since ``base_ref``, relative to ``root``."""
  toplevel = Path(_git(root, "rev-parse", "--show-toplevel").strip()).resolve()
  names: Set[str] = set()

  # -z keeps paths unquoted; --no-renames reports both sides of a move.
  diff = _git(root, "diff", "--name-only", "--no-renames", "-z", f"{base_ref}...HEAD")
  names.update(name for name in diff.split("\0") if name)
  names.update(_status_paths(_git(root, "status", "--porcelain", "-z", "--untracked-files=all")))

  relative: List[str] = []
  for name in sorted(names):
    absolute = toplevel / name
    try:
      relative.append(absolute.relative_to(root.resolve()).as_posix())
    except ValueError:
      continue
  return relative


def owning_stack(registry: Registry, relative_file: str) -> Optional[str]:
  directory = PurePosixPath("/" + relative_file).parent
  for candidate in [directory, *directory.parents]:
    path = str(candidate)
    if path in registry:
      return path
  return None


def stacks_for_files(registry: Registry, files: Iterable[str]) -> Set[str]:
  changed: Set[str] = set()
  for relative_file in files:
    owner = owning_stack(registry, relative_file)
    if owner is not None:
      changed.add(owner)
  return changed


def changed_stacks(registry: Registry, base_ref: str = DEFAULT_BASE_REF) -> Set[str]:
  return stacks_for_files(registry, changed_files(registry.root, base_ref))
