"""File-based job queue contract and polling watcher.

Consumers append ``pending`` jobs; the engine only ever moves a job's
``status`` forward. The file is read and rewritten without locking, so a
concurrent external edit can be lost when it races with a status rewrite.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from quad.engine.models import AgentConfig, AgentRole, AgentType

logger = logging.getLogger(__name__)

JOB_FILE_VERSION = "1.0"
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

_KNOWN_KEYS = frozenset(
    {"id", "agent", "role", "name", "command", "args", "task", "status", "addedAt"},
)


class JobStatus(str, Enum):
    """Job lifecycle. Only forward moves are allowed."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.ACCEPTED: 1,
    JobStatus.RUNNING: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
}


class JobFileParseError(ValueError):
    """Job file content is not valid JSON or does not match the schema."""


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return _STATUS_RANK[target] > _STATUS_RANK[current]


def job_agent_id(job_id: str) -> str:
    """Deterministic agent id for a job."""

    return f"job-{job_id}"


@dataclass(frozen=True, slots=True)
class JobEntry:
    """One job as written by a consumer."""

    id: str
    name: str
    agent: str = AgentType.CUSTOM.value
    role: str = AgentRole.CUSTOM.value
    command: str = ""
    args: tuple[str, ...] = ()
    task: str = ""
    status: JobStatus = JobStatus.PENDING
    added_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> JobEntry:
        if not isinstance(payload, dict):
            raise JobFileParseError("Job entry must be a JSON object")
        job_id = payload.get("id")
        if not isinstance(job_id, str) or not job_id.strip():
            raise JobFileParseError(f"Job entry is missing a string id: {payload!r}")
        raw_status = payload.get("status", JobStatus.PENDING.value)
        try:
            status = JobStatus(raw_status)
        except ValueError as error:
            raise JobFileParseError(f"Job {job_id}: unknown status {raw_status!r}") from error
        args = payload.get("args") or []
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise JobFileParseError(f"Job {job_id}: args must be a list of strings")
        return cls(
            id=job_id,
            name=str(payload.get("name") or job_id),
            agent=str(payload.get("agent") or AgentType.CUSTOM.value),
            role=str(payload.get("role") or AgentRole.CUSTOM.value),
            command=str(payload.get("command") or ""),
            args=tuple(args),
            task=str(payload.get("task") or ""),
            status=status,
            added_at=payload.get("addedAt"),
            extra={key: value for key, value in payload.items() if key not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "agent": self.agent,
                "role": self.role,
                "name": self.name,
                "command": self.command,
                "args": list(self.args),
                "task": self.task,
                "status": self.status.value,
                "addedAt": self.added_at,
            },
        )
        return payload

    def with_status(self, status: JobStatus) -> JobEntry:
        if not can_transition(self.status, status):
            raise ValueError(
                f"Job {self.id}: status cannot move from {self.status.value} to {status.value}",
            )
        return replace(self, status=status)

    def to_agent_config(self) -> AgentConfig:
        """Agent config for this job; ``ValueError`` on unknown agent type or role."""

        return AgentConfig(
            id=job_agent_id(self.id),
            name=self.name,
            type=AgentType(self.agent),
            role=AgentRole(self.role),
            command=self.command,
            args=self.args,
            task=self.task,
        )


@dataclass(slots=True)
class JobFile:
    """Top-level job file document.

    Entries that fail validation are kept verbatim in ``skipped``, keyed by
    their position in the jobs array, and written back in place.
    """

    version: str = JOB_FILE_VERSION
    jobs: list[JobEntry] = field(default_factory=list)
    skipped: dict[int, Any] = field(default_factory=dict)
    problems: list[str] = field(default_factory=list)

    def with_jobs(self, jobs: list[JobEntry]) -> JobFile:
        return replace(self, jobs=list(jobs))

    def to_dict(self) -> dict[str, Any]:
        entries: list[Any] = [job.to_dict() for job in self.jobs]
        for index, raw in sorted(self.skipped.items()):
            entries.insert(index, raw)
        return {"version": self.version, "jobs": entries}


def parse_job_file(raw: str | bytes) -> JobFile:
    """Parse job file content, raising ``JobFileParseError`` on bad input.

    Only a malformed document is an error. Invalid entries are set aside in
    ``JobFile.skipped`` so the valid ones are still processed.
    """

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise JobFileParseError(f"Invalid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise JobFileParseError("Job file must contain a JSON object")
    jobs = payload.get("jobs")
    if not isinstance(jobs, list):
        raise JobFileParseError("Invalid job file format: missing jobs array")
    version = payload.get("version")
    job_file = JobFile(version=str(version) if version is not None else JOB_FILE_VERSION)
    for index, entry in enumerate(jobs):
        try:
            job_file.jobs.append(JobEntry.from_dict(entry))
        except JobFileParseError as error:
            job_file.skipped[index] = entry
            job_file.problems.append(f"entry {index}: {error}")
    return job_file


def init_job_file(path: Path) -> None:
    """Create the parent directory and an empty job file if absent."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        _write_json_atomic(path, JobFile().to_dict())
        logger.info("Created job file %s", path)


def read_job_file(path: Path) -> JobFile | None:
    """Read the job file; ``None`` if it is missing or unparseable."""

    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    try:
        return parse_job_file(raw)
    except JobFileParseError as error:
        logger.warning("Ignoring job file %s: %s", path, error)
        return None


def write_job_file(path: Path, jobs: list[JobEntry], *, version: str | None = None) -> None:
    """Rewrite the jobs array, keeping the file's existing version."""

    if version is None:
        existing = read_job_file(path)
        version = existing.version if existing is not None else JOB_FILE_VERSION
    _write_json_atomic(path, JobFile(version=version, jobs=list(jobs)).to_dict())


def save_job_file(path: Path, job_file: JobFile) -> None:
    """Rewrite the whole document, skipped entries included."""

    _write_json_atomic(path, job_file.to_dict())


def append_job(path: Path, job: JobEntry) -> JobFile:
    """Append a new job (consumer side). Raises ``ValueError`` on duplicate id."""

    init_job_file(path)
    raw = path.read_bytes()
    job_file = parse_job_file(raw)
    if any(existing.id == job.id for existing in job_file.jobs):
        raise ValueError(f"Job already exists: {job.id}")
    job_file.jobs.append(job)
    _write_json_atomic(path, job_file.to_dict())
    return job_file


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


class JobFileWatcher:
    """Poll the job file and report each new successfully parsed version.

    Unchanged bytes are not re-parsed. Unparseable content is logged once and
    skipped; the last good state stays in effect until a valid file appears.
    Content whose callback raised is delivered again on the next tick.
    """

    def __init__(
        self,
        path: Path,
        on_change: Callable[[JobFile], object],
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.path = path
        self.interval_seconds = interval_seconds
        self._on_change = on_change
        self._last_raw: bytes | None = None
        self._last_bad_raw: bytes | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="quad-job-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def check(self) -> bool:
        """Run one poll tick. True if ``on_change`` was invoked."""

        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return False
        if raw == self._last_raw:
            return False
        if raw == self._last_bad_raw:
            logger.debug("Job file %s still unparseable, skipping", self.path)
            return False
        try:
            job_file = parse_job_file(raw)
        except JobFileParseError as error:
            self._last_bad_raw = raw
            logger.warning("Error reading job file %s: %s", self.path, error)
            return False
        self._last_bad_raw = None
        if job_file.problems:
            logger.warning(
                "Skipping %d invalid job entr%s in %s: %s",
                len(job_file.problems),
                "y" if len(job_file.problems) == 1 else "ies",
                self.path,
                "; ".join(job_file.problems),
            )
        self._last_raw = raw
        try:
            self._on_change(job_file)
        except Exception:
            self._last_raw = None
            raise
        return True

    def rearm(self) -> None:
        """Deliver the current content again on the next tick."""

        self._last_raw = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Job file poll failed")
            self._stop.wait(self.interval_seconds)
