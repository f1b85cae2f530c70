"""Ordered, selective execution of infrastructure stacks."""
from .errors import (
  AggregateFailure,
  ChangeDetectionError,
  CycleError,
  DiscoveryError,
  SchedulerError,
  StatusFilterError,
  UnresolvedReferenceError,
)
from .execution import ExecutionDriver, FailurePolicy, Outcome, RunSummary, StackResult
from .graph import DependencyGraph, build_graph, resolve_reference
from .manifests import ManifestRepository, Registry, Stack
from .order import resolve_order
from .scheduler import Project, load_project, plan_stacks, run_stacks
from .selection import select

__version__ = "0.1.0"
