"""Remote stack status lookup used by status-filtered listing and runs."""
from __future__ import annotations

import json
import re
import subprocess
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

import yaml

from .errors import StatusFilterError

DEFAULT_PAGE_SIZE = 10

StatusMap = Dict[Tuple[str, str], "StackStatus"]


class Status(str, Enum):
  OK = "ok"
  FAILED = "failed"
  DRIFTED = "drifted"
  UNKNOWN = "unknown"


class DeploymentStatus(str, Enum):
  OK = "ok"
  FAILED = "failed"
  PENDING = "pending"
  RUNNING = "running"
  CANCELED = "canceled"
  UNKNOWN = "unknown"


class DriftStatus(str, Enum):
  OK = "ok"
  DRIFTED = "drifted"
  FAILED = "failed"
  UNKNOWN = "unknown"


class StatusFilter(str, Enum):
  OK = "ok"
  HEALTHY = "healthy"
  UNHEALTHY = "unhealthy"
  FAILED = "failed"
  DRIFTED = "drifted"


E = TypeVar("E", Status, DeploymentStatus, DriftStatus)


def _coerce(enum_type: Type[E], value: Any) -> E:
  try:
    return enum_type(str(value).lower())
  except ValueError:
    return enum_type("unknown")


@dataclass(frozen=True)
class StackStatus:
  status: Status = Status.UNKNOWN
  deployment_status: DeploymentStatus = DeploymentStatus.UNKNOWN
  drift_status: DriftStatus = DriftStatus.UNKNOWN

  @property
  def unhealthy(self) -> bool:
    return (
      self.status in (Status.FAILED, Status.DRIFTED)
      or self.deployment_status is DeploymentStatus.FAILED
      or self.drift_status is DriftStatus.DRIFTED
    )

  def matches(self, status_filter: StatusFilter) -> bool:
    if status_filter in (StatusFilter.OK, StatusFilter.HEALTHY):
      return self.status is Status.OK and not self.unhealthy
    if status_filter is StatusFilter.UNHEALTHY:
      return self.unhealthy
    if status_filter is StatusFilter.FAILED:
      return self.status is Status.FAILED
    return self.status is Status.DRIFTED


def parse_status_filter(value: str) -> StatusFilter:
  try:
    return StatusFilter(value.strip().lower())
  except ValueError:
    allowed = ", ".join(item.value for item in StatusFilter)
    raise StatusFilterError(f"Unknown status filter '{value}' (expected one of: {allowed}).") from None


_SCP_REMOTE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>(?!/).+)$")


def normalize_repository(remote_url: str) -> str:
  """Reduce a git remote URL to ``host/owner/repo``.

  Filesystem remotes have no remote identity and are rejected.
  """
  url = remote_url.strip()
  if not url:
    raise StatusFilterError("status filter requires a repository remote")
  if url.startswith(("/", ".", "~", "file:")) or re.match(r"^[A-Za-z]:[\\/]", url):
    raise StatusFilterError(
      f"status filter does not work with filesystem based remotes ('{remote_url}')"
    )

  host: Optional[str]
  if "://" in url:
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname
    path = parsed.path
  else:
    match = _SCP_REMOTE.match(url)
    if match:
      host = match.group("host")
      path = match.group("path")
    else:
      host, _, path = url.partition("/")

  path = path.strip("/")
  if path.endswith(".git"):
    path = path[: -len(".git")]
  if not host or not path:
    raise StatusFilterError(f"Cannot determine repository identity from remote '{remote_url}'.")
  return f"{host.lower()}/{path}"


def repository_from_git(root: Path, remote: str = "origin") -> str:
  try:
    completed = subprocess.run(
      ["git", "remote", "get-url", remote],
      cwd=root,
      check=False,
      capture_output=True,
      text=True,
    )
  except FileNotFoundError:
    raise StatusFilterError("git executable was not found on PATH; pass --repository explicitly.") from None
  if completed.returncode != 0:
    raise StatusFilterError(
      f"Cannot read git remote '{remote}' in {root}: {completed.stderr.strip() or 'no such remote'}"
    )
  return normalize_repository(completed.stdout)


def _parse_records(records: Iterable[Any]) -> StatusMap:
  statuses: StatusMap = {}
  for record in records:
    if not isinstance(record, dict):
      raise ValueError("stack status entries must be mappings")
    meta_id = record.get("meta_id")
    repository = record.get("repository")
    if not meta_id or not repository:
      continue
    statuses[(str(meta_id), normalize_repository(str(repository)))] = StackStatus(
      status=_coerce(Status, record.get("status", "unknown")),
      deployment_status=_coerce(DeploymentStatus, record.get("deployment_status", "unknown")),
      drift_status=_coerce(DriftStatus, record.get("drift_status", "unknown")),
    )
  return statuses


def load_status_file(path: Path) -> StatusMap:
  """Read statuses exported as YAML or JSON (``stacks: [...]`` or a bare list)."""
  with path.open("r", encoding="utf-8") as handle:
    loaded = yaml.safe_load(handle) or []
  if isinstance(loaded, dict):
    loaded = loaded.get("stacks", [])
  if not isinstance(loaded, list):
    raise ValueError(f"Status file {path} must contain a list of stacks.")
  return _parse_records(loaded)


class StatusClient:
  def __init__(
    self,
    base_url: str,
    *,
    token: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    timeout: float = 30.0,
    opener: Optional[Callable[..., Any]] = None,
  ) -> None:
    if page_size < 1:
      raise ValueError("page_size must be positive")
    self._base_url = base_url.rstrip("/")
    self._token = token
    self._page_size = page_size
    self._timeout = timeout
    self._opener = opener or urllib.request.urlopen

  def _get(self, url: str) -> Dict[str, Any]:
    request = urllib.request.Request(url, headers={"Accept": "application/json"})
    if self._token:
      request.add_header("Authorization", f"Bearer {self._token}")
    try:
      with self._opener(request, timeout=self._timeout) as response:
        payload = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
      raise StatusFilterError(f"Status service returned HTTP {exc.code} for {url}.") from exc
    except urllib.error.URLError as exc:
      raise StatusFilterError(f"Status service at {self._base_url} is unreachable: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
      raise StatusFilterError(f"Status service returned invalid JSON for {url}.") from exc
    if not isinstance(payload, dict):
      raise StatusFilterError(f"Status service returned an unexpected payload for {url}.")
    return payload

  @staticmethod
  def _total(payload: Dict[str, Any], url: str) -> Optional[int]:
    paginated = payload.get("paginated_result")
    if paginated is None:
      return None
    total = paginated.get("total") if isinstance(paginated, dict) else None
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
      raise StatusFilterError(f"Status service returned an invalid pagination total for {url}: {total!r}.")
    return total

  def fetch(self, repository: str) -> StatusMap:
    records: List[Any] = []
    page = 1
    while True:
      query = urllib.parse.urlencode({"repository": repository, "page": page, "per_page": self._page_size})
      url = f"{self._base_url}/v1/stacks?{query}"
      payload = self._get(url)
      batch = payload.get("stacks") or []
      if not isinstance(batch, list):
        raise StatusFilterError(f"Status service returned an unexpected stacks value for {url}.")
      records.extend(batch)
      total = self._total(payload, url)
      if not batch:
        break
      # Without a total, a short page is the last one.
      if total is None and len(batch) < self._page_size:
        break
      if total is not None and len(records) >= total:
        break
      page += 1
    try:
      return _parse_records(records)
    except ValueError as exc:
      raise StatusFilterError(f"Status service returned malformed stacks: {exc}") from exc
