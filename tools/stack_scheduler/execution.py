"""Sequential execution of one command per stack."""
from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import AggregateFailure
from .manifests import Stack


class Outcome(str, Enum):
  SUCCEEDED = "succeeded"
  FAILED = "failed"
  INTERRUPTED = "interrupted"


class FailurePolicy(str, Enum):
  CONTINUE = "continue"
  STOP = "stop"


@dataclass(frozen=True)
class CommandResult:
  returncode: int
  stdout: str = ""
  stderr: str = ""


Runner = Callable[..., CommandResult]


def format_command(command: Iterable[str]) -> str:
  return " ".join(shlex.quote(arg) for arg in command)


def run_command(command: Sequence[str], *, cwd: Path) -> CommandResult:
  try:
    completed = subprocess.run(list(command), cwd=cwd, check=False, capture_output=True, text=True)
  except FileNotFoundError as exc:
    return CommandResult(
      returncode=127,
      stderr=(
        f"Command '{command[0]}' could not be executed ({exc.strerror or 'file not found'}). "
        "Ensure it is installed and available on PATH.\n"
      ),
    )
  except OSError as exc:
    return CommandResult(returncode=126, stderr=f"Command '{command[0]}' could not be executed: {exc}\n")
  return CommandResult(returncode=completed.returncode, stdout=completed.stdout, stderr=completed.stderr)


def dry_run(command: Sequence[str], *, cwd: Path) -> CommandResult:
  return CommandResult(returncode=0)


@dataclass(frozen=True)
class StackResult:
  stack: Stack
  command: Sequence[str]
  returncode: Optional[int]
  stdout: str
  stderr: str
  outcome: Outcome

  @property
  def succeeded(self) -> bool:
    return self.outcome is Outcome.SUCCEEDED


@dataclass
class RunSummary:
  planned: int
  results: List[StackResult] = field(default_factory=list)
  skipped: List[Stack] = field(default_factory=list)
  interrupted: bool = False

  @property
  def failed(self) -> List[StackResult]:
    return [result for result in self.results if not result.succeeded]

  @property
  def succeeded(self) -> List[StackResult]:
    return [result for result in self.results if result.succeeded]

  @property
  def ok(self) -> bool:
    return not self.failed and not self.skipped and not self.interrupted

  def raise_for_failures(self) -> None:
    if self.failed:
      raise AggregateFailure(self)


class ExecutionDriver:
  """Runs ``command`` in each stack directory, one stack at a time.

  Each ``StackResult`` is handed to ``sink`` as soon as its stack finishes.
  With ``FailurePolicy.STOP`` the first failure ends the run and the remaining
  stacks are reported as skipped; ``FailurePolicy.CONTINUE`` attempts them all.
  """

  def __init__(
    self,
    command: Sequence[str],
    *,
    runner: Runner = run_command,
    on_failure: FailurePolicy = FailurePolicy.CONTINUE,
    sink: Optional[Callable[[StackResult], None]] = None,
    on_start: Optional[Callable[[Stack], None]] = None,
  ) -> None:
    if not command:
      raise ValueError("A command is required to run stacks.")
    self._command = list(command)
    self._runner = runner
    self._on_failure = FailurePolicy(on_failure)
    self._sink = sink
    self._on_start = on_start

  def _record(self, summary: RunSummary, result: StackResult) -> None:
    summary.results.append(result)
    if self._sink is not None:
      self._sink(result)

  def run(self, plan: Sequence[Stack]) -> RunSummary:
    summary = RunSummary(planned=len(plan))

    for position, stack in enumerate(plan):
      if self._on_start is not None:
        self._on_start(stack)
      try:
        completed = self._runner(self._command, cwd=stack.directory)
      except KeyboardInterrupt:
        self._record(summary, StackResult(
          stack=stack,
          command=self._command,
          returncode=None,
          stdout="",
          stderr="interrupted before the command completed\n",
          outcome=Outcome.INTERRUPTED,
        ))
        summary.interrupted = True
        summary.skipped = list(plan[position + 1:])
        break

      outcome = Outcome.SUCCEEDED if completed.returncode == 0 else Outcome.FAILED
      self._record(summary, StackResult(
        stack=stack,
        command=self._command,
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
        outcome=outcome,
      ))

      if outcome is Outcome.FAILED and self._on_failure is FailurePolicy.STOP:
        summary.skipped = list(plan[position + 1:])
        break

    return summary
