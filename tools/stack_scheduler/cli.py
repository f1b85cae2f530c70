"""Command line interface: ``list``, ``plan run-order`` and ``run``."""
from __future__ import annotations

import argparse
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .changes import DEFAULT_BASE_REF, changed_stacks
from .cloud import (
  DEFAULT_PAGE_SIZE,
  StatusClient,
  load_status_file,
  normalize_repository,
  parse_status_filter,
  repository_from_git,
)
from .errors import SchedulerError, StatusFilterError
from .execution import FailurePolicy, Outcome, StackResult, dry_run, format_command, run_command
from .manifests import DEFAULT_MANIFEST_NAME, Stack, project_path
from .scheduler import Project, load_project, run_stacks
from .selection import StatusSelection

PALETTE_KEYS = ("heading", "root", "dependent", "arrow", "error", "reset")

EXIT_INTERRUPTED = 130


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def _supports_color_output() -> bool:
  stream = getattr(sys.stdout, "isatty", None)
  return bool(stream and stream()) and os.environ.get("NO_COLOR") is None


def build_console_palette(requested_mode: str) -> Dict[str, str]:
  try:
    mode = ColorMode(requested_mode or ColorMode.AUTO.value)
  except ValueError:
    mode = ColorMode.AUTO

  use_color = mode is ColorMode.ALWAYS or (mode is ColorMode.AUTO and _supports_color_output())
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color:
    palette.update({
      "heading": "\033[1m",
      "root": "\033[32m",
      "dependent": "\033[36m",
      "arrow": "\033[90m",
      "error": "\033[31m",
      "reset": "\033[0m",
    })
  return palette


def display_path(stack: Stack, scope: Optional[str]) -> str:
  if scope is None or scope == "/":
    return stack.relpath
  if stack.path == scope:
    return "."
  return stack.path[len(scope.rstrip("/")) + 1:]


def resolve_scope(root: Path, requested: Optional[str]) -> Optional[str]:
  """Project path of ``--scope``, or of the working directory when it sits inside the project."""
  if requested is not None:
    candidate = Path(requested)
    if not candidate.is_absolute():
      candidate = Path.cwd() / candidate
  else:
    candidate = Path.cwd()
  candidate = candidate.resolve()
  try:
    scope = project_path(root, candidate)
  except ValueError:
    if requested is not None:
      raise SchedulerError(f"Scope '{requested}' is outside the project root {root}.") from None
    return None
  return None if scope == "/" else scope


def print_dependency_summary(
  project: Project,
  ordered: Sequence[Stack],
  scope: Optional[str],
  palette: Optional[Dict[str, str]] = None,
) -> None:
  if not ordered:
    print("No stacks selected.")
    return

  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}

  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  selected = {stack.path for stack in ordered}

  print(f"{heading}Dependency map (selected scope):{reset}")
  for stack in ordered:
    dependencies = project.graph.dependencies[stack.path]
    colour = palette.get("dependent" if dependencies else "root", "")
    print(f"  {colour}{stack.path}{reset}")
    for dependency in dependencies:
      suffix = "" if dependency in selected else f" {palette.get('arrow', '')}(not selected){reset}"
      print(f"    {palette.get('arrow', '')}-> {reset}{palette.get('root', '')}{dependency}{reset}{suffix}")
  print()

  print(f"{heading}Execution order:{reset}")
  for position, stack in enumerate(ordered, 1):
    print(f"  {position}. {palette.get('dependent', '')}{display_path(stack, scope)}{reset}")
  print()


def _status_selection(args: argparse.Namespace, project: Project) -> Optional[StatusSelection]:
  if not args.cloud_status:
    return None
  status_filter = parse_status_filter(args.cloud_status)
  if args.repository:
    repository = normalize_repository(args.repository)
  else:
    repository = repository_from_git(project.root)

  if args.status_file:
    statuses = load_status_file(Path(args.status_file))
  else:
    api_url = os.environ.get("STACK_SCHEDULER_API_URL")
    if not api_url:
      raise StatusFilterError(
        "--cloud-status requires --status-file or the STACK_SCHEDULER_API_URL environment variable."
      )
    page_size_raw = os.environ.get("STACK_SCHEDULER_API_PAGESIZE", str(DEFAULT_PAGE_SIZE))
    try:
      page_size = int(page_size_raw)
    except ValueError:
      raise StatusFilterError(f"STACK_SCHEDULER_API_PAGESIZE must be an integer, got '{page_size_raw}'.") from None
    client = StatusClient(
      api_url,
      token=os.environ.get("STACK_SCHEDULER_API_TOKEN"),
      page_size=page_size,
    )
    statuses = client.fetch(repository)
  return StatusSelection(statuses=statuses, repository=repository, status_filter=status_filter)


def _select(args: argparse.Namespace) -> Tuple[Project, Optional[str], List[Stack]]:
  root = Path(args.root).resolve()
  project = load_project(root, args.manifest_name)
  scope = resolve_scope(project.root, args.scope)
  changed: Optional[Set[str]] = None
  if args.changed:
    changed = changed_stacks(project.registry, args.git_base)
    if not changed:
      return project, scope, []
  selected = project.select(changed=changed, scope=scope, status=_status_selection(args, project))
  return project, scope, selected


def cmd_list(args: argparse.Namespace) -> int:
  _, scope, selected = _select(args)
  for stack in sorted(selected, key=lambda candidate: candidate.path):
    print(display_path(stack, scope))
  return 0


def cmd_run_order(args: argparse.Namespace) -> int:
  _, scope, selected = _select(args)
  for stack in selected:
    print(display_path(stack, scope))
  return 0


def cmd_run(args: argparse.Namespace) -> int:
  command: List[str] = list(args.command)
  if command and command[0] == "--":
    command = command[1:]
  if not command:
    print("run requires a command to execute, e.g. 'run -- terraform plan'.", file=sys.stderr)
    return 1

  project, scope, selected = _select(args)
  palette = build_console_palette(args.color)
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")

  if args.verbose:
    print_dependency_summary(project, selected, scope, palette)

  label = "changed stacks" if args.changed else "all stacks"
  print(f"{heading}Running on {label}:{reset}", flush=True)

  def announce(stack: Stack) -> None:
    prefix = "[dry-run] " if args.dry_run else ""
    print(f"{prefix}[{display_path(stack, scope)}] running {format_command(command)}", flush=True)

  def report(result: StackResult) -> None:
    if result.stdout:
      sys.stdout.write(result.stdout)
      sys.stdout.flush()
    if result.stderr:
      sys.stderr.write(result.stderr)
    if result.outcome is Outcome.FAILED:
      print(
        f"{palette.get('error', '')}Stack '{display_path(result.stack, scope)}' failed with exit code "
        f"{result.returncode}.{reset}",
        file=sys.stderr,
      )
    elif result.outcome is Outcome.INTERRUPTED:
      print(f"Stack '{display_path(result.stack, scope)}' was interrupted.", file=sys.stderr)
    sys.stderr.flush()

  summary = run_stacks(
    selected,
    command,
    graph=project.graph,
    runner=dry_run if args.dry_run else run_command,
    on_failure=args.on_failure,
    sink=report,
    on_start=announce,
  )

  if summary.skipped:
    skipped = ", ".join(display_path(stack, scope) for stack in summary.skipped)
    print(f"Skipped stacks after earlier failures: {skipped}", file=sys.stderr)

  if summary.interrupted:
    print("Run interrupted.", file=sys.stderr)
    return EXIT_INTERRUPTED

  summary.raise_for_failures()
  if selected:
    print("All stacks processed successfully.")
  return 0


def _add_selection_arguments(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--changed",
    action="store_true",
    help="Only select stacks changed relative to the git base ref.",
  )
  parser.add_argument(
    "--git-base",
    default=os.environ.get("STACK_SCHEDULER_GIT_BASE", DEFAULT_BASE_REF),
    help=f"Git ref used by --changed (default: {DEFAULT_BASE_REF}).",
  )
  parser.add_argument(
    "--cloud-status",
    default=None,
    help="Only select stacks whose remote status matches: ok, healthy, unhealthy, failed, drifted.",
  )
  parser.add_argument(
    "--status-file",
    default=None,
    help="YAML/JSON file with remote stack statuses (instead of STACK_SCHEDULER_API_URL).",
  )
  parser.add_argument(
    "--repository",
    default=None,
    help="Repository identity used for status lookups (default: git remote 'origin').",
  )
  parser.add_argument(
    "--scope",
    default=None,
    help="Only select stacks at or below this directory (default: the working directory).",
  )


def build_parser() -> argparse.ArgumentParser:
  common = argparse.ArgumentParser(add_help=False)
  common.add_argument(
    "--root",
    default=".",
    help="Project root directory to search for stacks (default: current directory).",
  )
  common.add_argument(
    "--manifest-name",
    default=DEFAULT_MANIFEST_NAME,
    help=f"File name that marks a directory as a stack (default: {DEFAULT_MANIFEST_NAME}).",
  )

  parser = argparse.ArgumentParser(prog="stack-scheduler", description="Ordered stack execution")
  subcommands = parser.add_subparsers(dest="subcommand", required=True)

  list_parser = subcommands.add_parser("list", parents=[common], help="List selected stacks.")
  _add_selection_arguments(list_parser)
  list_parser.set_defaults(handler=cmd_list)

  plan_parser = subcommands.add_parser("plan", help="Inspect the execution plan.")
  plan_commands = plan_parser.add_subparsers(dest="plan_command", required=True)
  order_parser = plan_commands.add_parser("run-order", parents=[common], help="Print the execution order.")
  _add_selection_arguments(order_parser)
  order_parser.set_defaults(handler=cmd_run_order)

  run_parser = subcommands.add_parser("run", parents=[common], help="Run a command in every selected stack.")
  _add_selection_arguments(run_parser)
  failure_group = run_parser.add_mutually_exclusive_group()
  failure_group.add_argument(
    "--stop-on-error",
    dest="on_failure",
    action="store_const",
    const=FailurePolicy.STOP,
    help="Stop executing further stacks after the first failure.",
  )
  failure_group.add_argument(
    "--continue-on-error",
    dest="on_failure",
    action="store_const",
    const=FailurePolicy.CONTINUE,
    help="Attempt every selected stack even after failures (default unless STACK_SCHEDULER_ON_FAILURE=stop).",
  )
  run_parser.add_argument(
    "--dry-run",
    action="store_true",
    help="Print what would run without executing anything.",
  )
  run_parser.add_argument(
    "--verbose",
    action="store_true",
    help="Print the dependency map and execution order before running.",
  )
  run_parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  run_parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run in each stack.")
  run_parser.set_defaults(handler=cmd_run)
  return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  args = build_parser().parse_args(argv)
  if args.handler is cmd_run and args.on_failure is None:
    env_policy = os.environ.get("STACK_SCHEDULER_ON_FAILURE", FailurePolicy.CONTINUE.value).lower()
    try:
      args.on_failure = FailurePolicy(env_policy)
    except ValueError:
      args.on_failure = FailurePolicy.CONTINUE
  return args


def main(argv: Optional[List[str]] = None) -> int:
  args = parse_arguments(argv)
  try:
    return args.handler(args)
  except SchedulerError as exc:
    print(str(exc), file=sys.stderr)
    return 1
  except KeyboardInterrupt:
    print("Interrupted.", file=sys.stderr)
    return EXIT_INTERRUPTED
  except Exception as exc:  # pylint: disable=broad-except
    print(f"Unhandled error: {exc}", file=sys.stderr)
    return 1


if __name__ == "__main__":
  sys.exit(main())
