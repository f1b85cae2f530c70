"""Narrowing a resolved plan down to the stacks an invocation acts on.

Every filter keeps the relative order of the plan and only ever removes
stacks: a selected stack never pulls its unselected dependencies back in.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, List, Optional, Sequence

from .cloud import StatusFilter, StatusMap
from .manifests import Stack


@dataclass(frozen=True)
class StatusSelection:
  statuses: StatusMap
  repository: str
  status_filter: StatusFilter


def select_changed(plan: Sequence[Stack], changed: Optional[AbstractSet[str]]) -> List[Stack]:
  if not changed:
    return list(plan)
  return [stack for stack in plan if stack.path in changed]


def is_within(path: str, scope: str) -> bool:
  if scope == "/":
    return True
  return path == scope or path.startswith(scope.rstrip("/") + "/")


def select_scope(plan: Sequence[Stack], scope: Optional[str]) -> List[Stack]:
  if scope is None:
    return list(plan)
  return [stack for stack in plan if is_within(stack.path, scope)]


def select_status(plan: Sequence[Stack], selection: Optional[StatusSelection]) -> List[Stack]:
  if selection is None:
    return list(plan)
  selected: List[Stack] = []
  for stack in plan:
    if stack.id is None:
      continue
    status = selection.statuses.get((stack.id, selection.repository))
    if status is not None and status.matches(selection.status_filter):
      selected.append(stack)
  return selected


def select(
  plan: Sequence[Stack],
  *,
  changed: Optional[AbstractSet[str]] = None,
  scope: Optional[str] = None,
  status: Optional[StatusSelection] = None,
) -> List[Stack]:
  selected = select_changed(plan, changed)
  selected = select_scope(selected, scope)
  return select_status(selected, status)
