"""Entry points used by the command layer."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import AbstractSet, Callable, List, Optional, Sequence, Tuple

from .errors import SchedulerError
from .execution import ExecutionDriver, FailurePolicy, Runner, RunSummary, StackResult, run_command
from .graph import DependencyGraph, build_graph
from .manifests import DEFAULT_MANIFEST_NAME, ManifestRepository, Registry, Stack
from .order import order_violations, resolve_order
from .selection import StatusSelection, select


@dataclass(frozen=True)
class Project:
  registry: Registry
  graph: DependencyGraph
  order: Tuple[Stack, ...]

  @property
  def root(self) -> Path:
    return self.registry.root

  def select(
    self,
    *,
    changed: Optional[AbstractSet[str]] = None,
    scope: Optional[str] = None,
    status: Optional[StatusSelection] = None,
  ) -> List[Stack]:
    return select(self.order, changed=changed, scope=scope, status=status)


def load_project(root: Path, manifest_name: str = DEFAULT_MANIFEST_NAME) -> Project:
  registry = ManifestRepository(root, manifest_name).load()
  graph = build_graph(registry)
  return Project(registry=registry, graph=graph, order=resolve_order(graph))


def plan_stacks(
  root: Path,
  *,
  changed: Optional[AbstractSet[str]] = None,
  scope: Optional[str] = None,
  status: Optional[StatusSelection] = None,
  manifest_name: str = DEFAULT_MANIFEST_NAME,
) -> List[Stack]:
  return load_project(root, manifest_name).select(changed=changed, scope=scope, status=status)


def run_stacks(
  plan: Sequence[Stack],
  command: Sequence[str],
  *,
  graph: Optional[DependencyGraph] = None,
  runner: Runner = run_command,
  on_failure: FailurePolicy = FailurePolicy.CONTINUE,
  sink: Optional[Callable[[StackResult], None]] = None,
  on_start: Optional[Callable[[Stack], None]] = None,
) -> RunSummary:
  if graph is not None:
    violations = order_violations(graph, plan)
    if violations:
      details = ", ".join(f"{dependency} before {dependent}" for dependency, dependent in violations)
      raise SchedulerError(f"Refusing to run a plan that breaks ordering constraints: {details}.")
  driver = ExecutionDriver(command, runner=runner, on_failure=on_failure, sink=sink, on_start=on_start)
  return driver.run(plan)
