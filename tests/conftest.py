import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
import yaml


def write_stack(
  root: Path,
  relpath: str,
  *,
  after: Optional[Sequence[str]] = None,
  stack_id: Optional[str] = None,
  extra: Optional[Dict] = None,
) -> Path:
  directory = root if relpath in ("", ".") else root / relpath
  directory.mkdir(parents=True, exist_ok=True)
  section: Dict = {}
  if stack_id is not None:
    section["id"] = stack_id
  if after is not None:
    section["after"] = list(after)
  document: Dict = {"stack": section}
  if extra:
    document.update(extra)
  manifest = directory / "stack.yaml"
  manifest.write_text(yaml.safe_dump(document), encoding="utf-8")
  return directory


def build_tree(root: Path, layout: List[str]) -> None:
  """Create stacks from compact specs such as ``s:stack-b:after=["../stack-a"]`` or ``s:s1:id=s1``."""
  for spec in layout:
    kind, _, rest = spec.partition(":")
    assert kind == "s", f"unsupported layout entry {spec}"
    name, _, attribute = rest.partition(":")
    after = None
    stack_id = None
    if attribute.startswith("after="):
      after = yaml.safe_load(attribute[len("after="):])
    elif attribute.startswith("id="):
      stack_id = attribute[len("id="):]
    write_stack(root, name, after=after, stack_id=stack_id)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
  root = tmp_path / "project"
  root.mkdir()
  return root


def git(root: Path, *args: str) -> str:
  completed = subprocess.run(
    ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", "-c", "commit.gpgsign=false", *args],
    cwd=root,
    check=True,
    capture_output=True,
    text=True,
  )
  return completed.stdout


@pytest.fixture
def git_project(project_root: Path) -> Path:
  """Project with ``stack`` ordered after ``stack2``, committed on ``main``, on branch ``change-stack``."""
  if shutil.which("git") is None:
    pytest.skip("git is not installed")
  write_stack(project_root, "stack2")
  (project_root / "stack2" / "main.tf").write_text("# some code\n", encoding="utf-8")
  write_stack(project_root, "stack", after=["/stack2"])
  (project_root / "stack" / "main.tf").write_text("# some code\n", encoding="utf-8")
  git(project_root, "init", "-q")
  git(project_root, "symbolic-ref", "HEAD", "refs/heads/main")
  git(project_root, "add", "-A")
  git(project_root, "commit", "-q", "-m", "first commit")
  git(project_root, "checkout", "-q", "-b", "change-stack")
  return project_root
