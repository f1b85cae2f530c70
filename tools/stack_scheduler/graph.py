from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .errors import UnresolvedReferenceError
from .manifests import Registry, Stack


def resolve_reference(stack_path: str, reference: str) -> str:
  """Rewrite an ``after`` entry to a canonical project path.

  Entries starting with ``/`` are taken from the project root, everything else
  is relative to the declaring stack's directory.
  """
  if not reference.strip():
    raise UnresolvedReferenceError(stack_path, reference, "reference is empty")

  if reference.startswith("/"):
    parts: List[str] = []
  else:
    parts = [part for part in stack_path.split("/") if part]

  for segment in reference.split("/"):
    if segment in ("", "."):
      continue
    if segment == "..":
      if not parts:
        raise UnresolvedReferenceError(stack_path, reference, "path is outside the project root")
      parts.pop()
      continue
    parts.append(segment)

  return "/" + "/".join(parts)


@dataclass(frozen=True)
class DependencyGraph:
  """Stacks and the resolved ``after`` edges between them.

  ``dependencies[path]`` keeps the declared order of the stack's ``after`` list;
  ``stacks`` is keyed in lexicographic path order.
  """

  stacks: Dict[str, Stack]
  dependencies: Dict[str, Tuple[str, ...]]

  def __len__(self) -> int:
    return len(self.stacks)

  def paths(self) -> List[str]:
    return list(self.stacks.keys())

  def edges(self) -> List[Tuple[str, str]]:
    return [
      (dependency, path)
      for path, dependencies in self.dependencies.items()
      for dependency in dependencies
    ]

  def dependents(self) -> Dict[str, Tuple[str, ...]]:
    collected: Dict[str, List[str]] = {path: [] for path in self.stacks}
    for path, dependencies in self.dependencies.items():
      for dependency in dependencies:
        collected[dependency].append(path)
    return {path: tuple(children) for path, children in collected.items()}

  def top_level(self) -> List[str]:
    """Stacks that no other stack is ordered after, in path order."""
    dependents = self.dependents()
    return [path for path in self.stacks if not dependents[path]]


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
  seen = set()
  ordered: List[str] = []
  for item in items:
    if item in seen:
      continue
    seen.add(item)
    ordered.append(item)
  return tuple(ordered)


def build_graph(registry: Registry) -> DependencyGraph:
  stacks: Dict[str, Stack] = {}
  dependencies: Dict[str, Tuple[str, ...]] = {}

  for stack in registry:
    resolved: List[str] = []
    for reference in stack.after:
      target = resolve_reference(stack.path, reference)
      if target not in registry:
        raise UnresolvedReferenceError(stack.path, reference, f"no stack found at '{target}'")
      resolved.append(target)
    stacks[stack.path] = stack
    dependencies[stack.path] = _unique(resolved)

  return DependencyGraph(stacks=stacks, dependencies=dependencies)
