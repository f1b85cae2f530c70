"""Error types raised while discovering, ordering and running stacks."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, List, Sequence, Tuple

if TYPE_CHECKING:
  from .execution import RunSummary


class SchedulerError(RuntimeError):
  pass


class DiscoveryError(SchedulerError):
  def __init__(self, problems: Sequence[Tuple[Path, str]]) -> None:
    self.problems: List[Tuple[Path, str]] = list(problems)
    lines = [f"  {path}: {message}" for path, message in self.problems]
    super().__init__(
      f"Failed to load {len(self.problems)} stack manifest(s):\n" + "\n".join(lines)
    )


class UnresolvedReferenceError(SchedulerError):
  def __init__(self, stack: str, reference: str, reason: str = "no stack found at that path") -> None:
    self.stack = stack
    self.reference = reference
    self.reason = reason
    super().__init__(f"Stack '{stack}' has unresolvable after reference '{reference}': {reason}.")


class CycleError(SchedulerError):
  def __init__(self, stacks: Sequence[str]) -> None:
    self.stacks: List[str] = list(stacks)
    if len(self.stacks) == 1:
      detail = f"stack '{self.stacks[0]}' is ordered after itself"
    else:
      chain = " -> ".join(self.stacks + [self.stacks[0]])
      detail = f"cycle {chain}"
    super().__init__(f"Cyclic ordering detected: {detail}.")


class StatusFilterError(SchedulerError):
  pass


class ChangeDetectionError(SchedulerError):
  pass


class AggregateFailure(SchedulerError):
  def __init__(self, summary: "RunSummary") -> None:
    self.summary = summary
    failed = [result.stack.relpath for result in summary.failed]
    super().__init__(
      f"{len(failed)} of {summary.planned} stacks failed: {', '.join(failed)}"
    )
