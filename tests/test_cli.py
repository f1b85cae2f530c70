import sys

import pytest

from conftest import build_tree, git

from stack_scheduler.cli import main, parse_arguments
from stack_scheduler.execution import FailurePolicy

PRINT_DIR = "import os; print('in ' + os.path.basename(os.getcwd()))"
FAIL_IN_B = "import os, sys; sys.exit(1 if os.path.basename(os.getcwd()) == 'b' else 0)"


def run_cli(capsys, *argv):
  code = main(list(argv))
  captured = capsys.readouterr()
  return code, captured.out, captured.err


def test_list_prints_stacks_in_path_order(project_root, capsys):
  build_tree(project_root, ['s:b:after=["../c"]', "s:a", "s:c"])
  code, out, _ = run_cli(capsys, "list", "--root", str(project_root))
  assert code == 0
  assert out == "a\nb\nc\n"


def test_plan_run_order(project_root, capsys):
  build_tree(project_root, [
    's:stack-c:after=["../stack-b"]',
    's:stack-b:after=["../stack-a"]',
    "s:stack-a",
    's:stack-d:after=["../stack-z"]',
    "s:stack-z",
  ])
  code, out, _ = run_cli(capsys, "plan", "run-order", "--root", str(project_root))
  assert code == 0
  assert out.splitlines() == ["stack-a", "stack-b", "stack-c", "stack-z", "stack-d"]


def test_cycle_fails_before_anything_runs(project_root, capsys):
  build_tree(project_root, ['s:a:after=["../b"]', 's:b:after=["../a"]'])
  marker = project_root / "ran"
  code, out, err = run_cli(
    capsys, "run", "--root", str(project_root), "--",
    sys.executable, "-c", f"open({str(marker)!r}, 'w').close()",
  )
  assert code == 1
  assert "Cyclic ordering detected" in err
  assert not marker.exists()
  assert out == ""


def test_unresolved_reference_is_reported(project_root, capsys):
  build_tree(project_root, ['s:A:after=["/outside/project"]'])
  code, _, err = run_cli(capsys, "plan", "run-order", "--root", str(project_root))
  assert code == 1
  assert "'/A'" in err and "/outside/project" in err


def test_run_streams_output_per_stack(project_root, capsys):
  build_tree(project_root, ['s:b:after=["../a"]', "s:a"])
  code, out, _ = run_cli(capsys, "run", "--root", str(project_root), "--", sys.executable, "-c", PRINT_DIR)
  lines = out.splitlines()

  assert code == 0
  assert lines[0] == "Running on all stacks:"
  assert lines[1].startswith("[a] running ")
  assert lines[2] == "in a"
  assert lines[3].startswith("[b] running ")
  assert lines[4] == "in b"
  assert lines[5] == "All stacks processed successfully."


def test_run_continues_after_failure_by_default(project_root, capsys, monkeypatch):
  monkeypatch.delenv("STACK_SCHEDULER_ON_FAILURE", raising=False)
  build_tree(project_root, ["s:a", "s:b", "s:c"])
  code, out, err = run_cli(capsys, "run", "--root", str(project_root), "--", sys.executable, "-c", FAIL_IN_B)

  assert code == 1
  assert "[c] running" in out
  assert "Stack 'b' failed with exit code 1." in err
  assert err.rstrip().endswith("1 of 3 stacks failed: b")
  assert "All stacks processed successfully." not in out


def test_run_stop_on_error(project_root, capsys):
  build_tree(project_root, ["s:a", "s:b", "s:c"])
  code, out, err = run_cli(
    capsys, "run", "--root", str(project_root), "--stop-on-error", "--", sys.executable, "-c", FAIL_IN_B,
  )
  assert code == 1
  assert "[c] running" not in out
  assert "Skipped stacks after earlier failures: c" in err


def test_failure_policy_from_environment(monkeypatch):
  monkeypatch.setenv("STACK_SCHEDULER_ON_FAILURE", "stop")
  assert parse_arguments(["run", "--", "true"]).on_failure is FailurePolicy.STOP
  assert parse_arguments(["run", "--continue-on-error", "--", "true"]).on_failure is FailurePolicy.CONTINUE
  monkeypatch.setenv("STACK_SCHEDULER_ON_FAILURE", "bogus")
  assert parse_arguments(["run", "--", "true"]).on_failure is FailurePolicy.CONTINUE


def test_run_requires_a_command(project_root, capsys):
  build_tree(project_root, ["s:a"])
  code, _, err = run_cli(capsys, "run", "--root", str(project_root))
  assert code == 1
  assert "requires a command" in err


def test_dry_run_executes_nothing(project_root, capsys):
  build_tree(project_root, ["s:a"])
  marker = project_root / "a" / "ran"
  code, out, _ = run_cli(
    capsys, "run", "--root", str(project_root), "--dry-run", "--",
    sys.executable, "-c", "open('ran', 'w').close()",
  )
  assert code == 0
  assert "[dry-run] [a] running" in out
  assert not marker.exists()


def test_verbose_prints_dependency_map(project_root, capsys):
  build_tree(project_root, ['s:b:after=["../a"]', "s:a"])
  code, out, _ = run_cli(
    capsys, "run", "--root", str(project_root), "--verbose", "--color", "never", "--dry-run", "--", "true",
  )
  assert code == 0
  assert "Dependency map (selected scope):" in out
  assert "-> /a" in out
  assert "Execution order:\n  1. a\n  2. b" in out


def test_scope_limits_and_relativises_output(project_root, capsys):
  build_tree(project_root, ["s:prod", "s:prod/app", "s:staging"])
  code, out, _ = run_cli(capsys, "list", "--root", str(project_root), "--scope", str(project_root / "prod"))
  assert code == 0
  assert out == ".\napp\n"


def test_changed_stack_runs_without_unchanged_dependency(git_project, capsys):
  change = "# change is the eternal truth of the universe"
  (git_project / "stack" / "main.tf").write_text(change + "\n", encoding="utf-8")
  git(git_project, "commit", "-q", "-am", "stack changed")

  code, out, _ = run_cli(capsys, "list", "--root", str(git_project), "--changed", "--git-base", "main")
  assert code == 0
  assert out == "stack\n"

  code, out, _ = run_cli(
    capsys, "run", "--root", str(git_project), "--changed", "--git-base", "main", "--",
    sys.executable, "-c", "print(open('main.tf').read().strip())",
  )
  lines = out.splitlines()
  assert code == 0
  assert lines[0] == "Running on changed stacks:"
  assert lines[1].startswith("[stack] running ")
  assert lines[2] == change
  assert "[stack2]" not in out


def test_all_changed_stacks_run_in_order(git_project, capsys):
  for name in ("stack", "stack2"):
    (git_project / name / "main.tf").write_text("# changed\n", encoding="utf-8")
  git(git_project, "commit", "-q", "-am", "both changed")

  code, out, _ = run_cli(capsys, "list", "--root", str(git_project), "--changed", "--git-base", "main")
  assert out == "stack\nstack2\n"

  code, out, _ = run_cli(capsys, "plan", "run-order", "--root", str(git_project), "--changed", "--git-base", "main")
  assert code == 0
  assert out == "stack2\nstack\n"


def test_nothing_changed_selects_nothing(git_project, capsys):
  code, out, _ = run_cli(capsys, "list", "--root", str(git_project), "--changed", "--git-base", "main")
  assert code == 0
  assert out == ""

  code, out, _ = run_cli(
    capsys, "run", "--root", str(git_project), "--changed", "--git-base", "main", "--", "true",
  )
  assert code == 0
  assert out == "Running on changed stacks:\n"


def _write_status_file(path):
  path.write_text(
    "stacks:\n"
    "  - {meta_id: s1, repository: github.com/acme/infra, status: failed, deployment_status: failed, drift_status: ok}\n"
    "  - {meta_id: s2, repository: github.com/acme/infra, status: ok, deployment_status: ok, drift_status: ok}\n"
    "  - {meta_id: s3, repository: gitlab.com/other/repo, status: drifted, deployment_status: ok, drift_status: drifted}\n",
    encoding="utf-8",
  )
  return path


@pytest.mark.parametrize(
  "status_filter, expected",
  [("unhealthy", "s1\n"), ("ok", "s2\n"), ("healthy", "s2\n"), ("drifted", "")],
)
def test_list_with_cloud_status(project_root, tmp_path, capsys, status_filter, expected):
  build_tree(project_root, ["s:s1:id=s1", "s:s2:id=s2", "s:s3:id=s3", "s:stack-without-id"])
  status_file = _write_status_file(tmp_path / "status.yaml")
  code, out, _ = run_cli(
    capsys, "list", "--root", str(project_root),
    f"--cloud-status={status_filter}", "--status-file", str(status_file),
    "--repository", "git@github.com:acme/infra.git",
  )
  assert code == 0
  assert out == expected


def test_cloud_status_rejects_filesystem_remote(project_root, tmp_path, capsys):
  build_tree(project_root, ["s:s1:id=s1"])
  status_file = _write_status_file(tmp_path / "status.yaml")
  code, _, err = run_cli(
    capsys, "list", "--root", str(project_root), "--cloud-status=unhealthy",
    "--status-file", str(status_file), "--repository", str(tmp_path),
  )
  assert code == 1
  assert "does not work with filesystem based remotes" in err


def test_cloud_status_requires_a_source(project_root, capsys, monkeypatch):
  monkeypatch.delenv("STACK_SCHEDULER_API_URL", raising=False)
  build_tree(project_root, ["s:s1:id=s1"])
  code, _, err = run_cli(
    capsys, "list", "--root", str(project_root), "--cloud-status=unhealthy",
    "--repository", "github.com/acme/infra",
  )
  assert code == 1
  assert "STACK_SCHEDULER_API_URL" in err
