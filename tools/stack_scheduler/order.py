"""Deterministic execution order for a dependency graph.

Top-level stacks (stacks no other stack is ordered after) are expanded in path
order, depth-first through each ``after`` list in declared order, emitting
every stack after all of its dependencies. Stacks left over once the top-level
walk is done can only sit on a cycle; they are walked in path order so the
cycle gets reported.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterator, List, Sequence, Tuple

from .errors import CycleError
from .graph import DependencyGraph
from .manifests import Stack


class VisitState(Enum):
  UNVISITED = "unvisited"
  IN_PROGRESS = "in-progress"
  DONE = "done"


def _visit(
  graph: DependencyGraph,
  start: str,
  state: Dict[str, VisitState],
  order: List[Stack],
) -> None:
  state[start] = VisitState.IN_PROGRESS
  pending: List[Tuple[str, Iterator[str]]] = [(start, iter(graph.dependencies[start]))]

  while pending:
    current, dependencies = pending[-1]
    for dependency in dependencies:
      dependency_state = state[dependency]
      if dependency_state is VisitState.DONE:
        continue
      if dependency_state is VisitState.IN_PROGRESS:
        active = [path for path, _ in pending]
        raise CycleError(active[active.index(dependency):])
      state[dependency] = VisitState.IN_PROGRESS
      pending.append((dependency, iter(graph.dependencies[dependency])))
      break
    else:
      pending.pop()
      state[current] = VisitState.DONE
      order.append(graph.stacks[current])


def resolve_order(graph: DependencyGraph) -> Tuple[Stack, ...]:
  state = {path: VisitState.UNVISITED for path in graph.stacks}
  order: List[Stack] = []

  for start in graph.top_level() + graph.paths():
    if state[start] is VisitState.UNVISITED:
      _visit(graph, start, state, order)

  return tuple(order)


def order_violations(graph: DependencyGraph, plan: Sequence[Stack]) -> List[Tuple[str, str]]:
  """Edges ``(dependency, dependent)`` that ``plan`` places in the wrong order."""
  position = {stack.path: index for index, stack in enumerate(plan)}
  return [
    (dependency, dependent)
    for dependency, dependent in graph.edges()
    if dependency in position and dependent in position and position[dependency] > position[dependent]
  ]
