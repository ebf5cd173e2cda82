"""Bridge between the job file and the agent registry."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from quad.bridge.job_file import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    JobEntry,
    JobFile,
    JobFileWatcher,
    JobStatus,
    can_transition,
    init_job_file,
    job_agent_id,
    read_job_file,
    save_job_file,
)
from quad.engine.models import AgentConfig, AgentStatus
from quad.engine.registry import AgentRegistry
from quad.runtime import DuplicateAgentError

logger = logging.getLogger(__name__)

_OUTCOME_BY_AGENT_STATUS = {
    AgentStatus.FINISHED: JobStatus.COMPLETED,
    AgentStatus.ERROR: JobStatus.FAILED,
}


class AgentHost(Protocol):
    """What the bridge needs from the runtime."""

    def add_agent(self, config: AgentConfig) -> AgentConfig: ...

    def snapshot(self) -> AgentRegistry: ...

    def add_registry_listener(self, listener: Callable[[AgentRegistry], None]) -> None: ...

    def remove_registry_listener(self, listener: Callable[[AgentRegistry], None]) -> None: ...


class JobBridge:
    """Spawn agents for new jobs and write agent outcomes back as job status.

    Each job id is spawned at most once per process (in-memory accepted set)
    and across restarts (the file records ``accepted``).
    """

    def __init__(
        self,
        *,
        host: AgentHost,
        job_file_path: Path,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.host = host
        self.job_file_path = job_file_path
        self.poll_interval_seconds = poll_interval_seconds
        self._accepted: set[str] = set()
        self._accepted_lock = threading.Lock()
        self._file_lock = threading.Lock()
        self._last_outcomes: dict[str, AgentStatus] | None = None
        self._watcher: JobFileWatcher | None = None
        self._stopped = False
        self._listening = False

    @property
    def accepted_job_ids(self) -> frozenset[str]:
        with self._accepted_lock:
            return frozenset(self._accepted)

    def start(self) -> None:
        init_job_file(self.job_file_path)
        self._stopped = False
        if not self._listening:
            self.host.add_registry_listener(self.sync_outcomes)
            self._listening = True
        self._watcher = JobFileWatcher(
            self.job_file_path,
            self.handle_jobs,
            interval_seconds=self.poll_interval_seconds,
        )
        self._watcher.start()
        logger.info(
            "Watching job file %s every %gs",
            self.job_file_path,
            self.poll_interval_seconds,
        )

    def stop(self) -> None:
        self._stopped = True
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._listening:
            self._listening = False
            self.host.remove_registry_listener(self.sync_outcomes)

    def handle_jobs(self, job_file: JobFile) -> list[str]:
        """Accept every new pending job: spawn its agent, then mark it accepted.

        A job whose spawn raises stays ``pending`` and is retried on a later
        tick; the jobs spawned before it are still written back.
        """

        with self._accepted_lock:
            pending = [
                job
                for job in job_file.jobs
                if job.status is JobStatus.PENDING and job.id not in self._accepted
            ]
            self._accepted.update(job.id for job in pending)
        if not pending:
            return []

        targets: dict[str, JobStatus] = {}
        retry: list[str] = []
        for job in pending:
            try:
                targets[job.id] = self._spawn(job)
            except Exception as error:
                logger.warning("Could not spawn agent for job %s, will retry: %s", job.id, error)
                retry.append(job.id)
        if retry:
            with self._accepted_lock:
                self._accepted.difference_update(retry)
            if self._watcher is not None:
                self._watcher.rearm()
        if not targets:
            return []

        with self._file_lock:
            current = read_job_file(self.job_file_path) or job_file
            updated = [_moved(job, targets.get(job.id)) for job in current.jobs]
            save_job_file(self.job_file_path, current.with_jobs(updated))
            # Agents may have changed status before the accepted write landed.
            self._last_outcomes = None
        logger.info("Accepted %d job(s): %s", len(targets), ", ".join(targets))
        self.sync_outcomes(self.host.snapshot())
        return list(targets)

    def sync_outcomes(self, registry: AgentRegistry) -> bool:
        """Reflect job-agent status into the file. True if the file was rewritten."""

        if self._stopped:
            return False
        with self._accepted_lock:
            agent_ids = [job_agent_id(job_id) for job_id in self._accepted]
        if not agent_ids:
            return False
        outcomes = {
            agent_id: agent.status
            for agent_id in agent_ids
            if (agent := registry.get(agent_id)) is not None
        }

        with self._file_lock:
            if outcomes == self._last_outcomes:
                return False
            job_file = read_job_file(self.job_file_path)
            if job_file is None:
                return False
            self._last_outcomes = outcomes
            changed: list[str] = []
            jobs: list[JobEntry] = []
            for job in job_file.jobs:
                target = _outcome_status(job, registry)
                if target is not None and can_transition(job.status, target):
                    job = job.with_status(target)
                    changed.append(f"{job.id}={target.value}")
                jobs.append(job)
            if not changed:
                return False
            save_job_file(self.job_file_path, job_file.with_jobs(jobs))
        logger.info("Job status synced: %s", ", ".join(changed))
        return True

    def _spawn(self, job: JobEntry) -> JobStatus:
        try:
            config = job.to_agent_config()
        except ValueError as error:
            logger.warning("Rejecting job %s: %s", job.id, error)
            return JobStatus.FAILED
        try:
            self.host.add_agent(config)
        except DuplicateAgentError:
            logger.warning("Agent %s already exists; job %s not respawned", config.id, job.id)
        return JobStatus.ACCEPTED


def _moved(job: JobEntry, target: JobStatus | None) -> JobEntry:
    if target is None or not can_transition(job.status, target):
        return job
    return job.with_status(target)


def _outcome_status(job: JobEntry, registry: AgentRegistry) -> JobStatus | None:
    if job.status not in (JobStatus.ACCEPTED, JobStatus.RUNNING):
        return None
    agent = registry.get(job_agent_id(job.id))
    if agent is None:
        return None
    if agent.status is AgentStatus.RUNNING and job.status is JobStatus.ACCEPTED:
        return JobStatus.RUNNING
    return _OUTCOME_BY_AGENT_STATUS.get(agent.status)
