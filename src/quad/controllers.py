"""Controllers for quad CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from quad.bridge.client import QuadApiClient
from quad.bridge.job_file import (
    JobEntry,
    append_job,
    init_job_file,
    job_agent_id,
    read_job_file,
)
from quad.common import to_iso, utc_now
from quad.config import Settings
from quad.demo import demo_configs
from quad.engine.driver import LoopEvent
from quad.service import QuadService, ServiceOptions

logger = logging.getLogger(__name__)

LOOP_ACTIONS = ("start", "pause", "reset")
_LOOP_ACTION_LABELS = {"started": "Loop started", "paused": "Loop paused", "reset": "Loop reset"}

ClientFactory = Callable[[int], QuadApiClient]


@dataclass(slots=True)
class RunCommand:
    """CLI input for running an instance in the foreground."""

    port: int | None = None
    enable_api: bool = True
    enable_bridge: bool = True
    job_file: Path | None = None
    demo: bool = False
    auto_restart: bool | None = None
    start_loop: bool = False
    max_runtime_seconds: float | None = None


@dataclass(slots=True)
class ApiCommand:
    """CLI input shared by commands that talk to a running instance."""

    port: int | None = None


@dataclass(slots=True)
class AgentLookupCommand(ApiCommand):
    agent_id: str = ""


@dataclass(slots=True)
class AddAgentCommand(ApiCommand):
    name: str = ""
    agent_id: str | None = None
    agent_type: str | None = None
    role: str | None = None
    command: str = ""
    args: tuple[str, ...] = ()


@dataclass(slots=True)
class LoopActionCommand(ApiCommand):
    action: str = "start"


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for appending a pending job to the job file."""

    name: str
    command: str
    job_file: Path | None = None
    job_id: str | None = None
    role: str = "custom"
    agent: str = "custom"
    task: str = ""
    args: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True)
class JobListCommand:
    job_file: Path | None = None


def _default_client(port: int) -> QuadApiClient:
    return QuadApiClient(port=port)


class QuadCliController:
    """Translate CLI commands into service, API and job-file calls."""

    def __init__(self, *, client_factory: ClientFactory = _default_client) -> None:
        self._client_factory = client_factory

    def run(
        self,
        command: RunCommand,
        *,
        on_ready: Callable[[list[str]], None] | None = None,
        stop_event: threading.Event | None = None,
    ) -> list[str]:
        """Boot the service and block until a signal, ``stop_event`` or timeout."""

        settings = Settings.from_env()
        if command.port is not None:
            settings.api.port = command.port
        if command.job_file is not None:
            settings.bridge.job_file_path = command.job_file
        if command.auto_restart is not None:
            settings.supervisor.auto_restart = command.auto_restart
        settings.validate()

        stop = stop_event or threading.Event()
        stop_reason: list[str] = []
        service = QuadService(
            settings,
            ServiceOptions(
                enable_api=command.enable_api,
                enable_bridge=command.enable_bridge,
                start_loop=command.start_loop,
            ),
        )
        agents = demo_configs() if command.demo else []

        def _request_stop(signal_name: str) -> None:
            stop_reason.append(signal_name)
            stop.set()

        with _signal_handlers(_request_stop):
            service.start(agents=agents, loop_listener=_log_loop_event)
            try:
                ready = [f"Agents: {len(agents)}"]
                if service.api is not None:
                    ready.append(f"API: {service.api.url}/api")
                if service.bridge is not None:
                    ready.append(f"Job file: {service.bridge.job_file_path}")
                if on_ready is not None:
                    on_ready(ready)
                _wait(stop, command.max_runtime_seconds)
            finally:
                service.stop()

        loop = service.runtime.loop_state
        return [
            f"Stopped ({stop_reason[0] if stop_reason else 'done'})",
            f"Loop: status={loop.status.value} phase={loop.current_phase.value} "
            f"cycles={loop.cycle_count}",
        ]

    def status(self, command: ApiCommand) -> list[str]:
        with self._client(command) as client:
            payload = client.status()
        return [
            f"Loop: {payload['status']} phase={payload['currentPhase']} "
            f"cycle={payload['cycleCount']}",
            f"Agents: {payload['agentCount']}",
        ]

    def agents(self, command: ApiCommand) -> list[str]:
        with self._client(command) as client:
            agents = client.agents()
        lines = [f"Agents: {len(agents)}"]
        lines.extend(f"  {_agent_summary(agent)}" for agent in agents)
        return lines

    def agent(self, command: AgentLookupCommand) -> list[str]:
        with self._client(command) as client:
            agent = client.agent(command.agent_id)
        lines = [
            f"Agent: {agent['id']}",
            f"Name: {agent['name']}",
            f"Type: {agent['type']}",
            f"Role: {agent['role']}",
            f"Status: {agent['status']}",
            f"PID: {agent['pid'] or '-'}",
            f"Started: {agent['startedAt'] or '-'}",
            f"Restarts: {agent['restartCount']}",
            f"Error: {agent['error'] or '-'}",
            f"Command: {agent['command']}",
        ]
        recent = agent.get("recentOutput") or []
        lines.append(f"Recent output ({len(recent)} lines):")
        lines.extend(f"  {line}" for line in recent)
        return lines

    def add_agent(self, command: AddAgentCommand) -> list[str]:
        payload: dict[str, Any] = {
            "name": command.name,
            "command": command.command,
            "args": list(command.args),
        }
        if command.agent_id:
            payload["id"] = command.agent_id
        if command.agent_type:
            payload["type"] = command.agent_type
        if command.role:
            payload["role"] = command.role
        with self._client(command) as client:
            created = client.add_agent(payload)
        return [f"Agent added: {created['id']} role={created['role']} type={created['type']}"]

    def remove_agent(self, command: AgentLookupCommand) -> list[str]:
        with self._client(command) as client:
            result = client.remove_agent(command.agent_id)
        return [f"Agent removed: {result['removed']}"]

    def loop(self, command: LoopActionCommand) -> list[str]:
        if command.action not in LOOP_ACTIONS:
            raise ValueError(f"Unknown loop action: {command.action}")
        with self._client(command) as client:
            result = client.loop_action(command.action)
            state = client.loop()
        return [
            _LOOP_ACTION_LABELS.get(result["action"], result["action"]),
            f"Loop: {state['status']} phase={state['currentPhase']} cycle={state['cycleCount']}",
        ]

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        path = _job_file_path(command.job_file)
        job = JobEntry(
            id=command.job_id or uuid4().hex[:8],
            name=command.name,
            agent=command.agent,
            role=command.role,
            command=command.command,
            args=tuple(command.args),
            task=command.task,
            added_at=to_iso(utc_now()),
        )
        job_file = append_job(path, job)
        return [
            f"Job submitted: {job.id} (agent {job_agent_id(job.id)})",
            f"Job file: {path} ({len(job_file.jobs)} jobs)",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        path = _job_file_path(command.job_file)
        init_job_file(path)
        job_file = read_job_file(path)
        if job_file is None:
            return [f"Job file is unreadable: {path}"]
        lines = [f"Jobs: {len(job_file.jobs)} (version {job_file.version})"]
        for job in job_file.jobs:
            lines.append(
                f"  {job.id} status={job.status.value} role={job.role} "
                f"agent={job.agent} name={job.name}",
            )
        for problem in job_file.problems:
            lines.append(f"  skipped {problem}")
        return lines

    def _client(self, command: ApiCommand) -> QuadApiClient:
        port = command.port if command.port is not None else Settings.from_env().api.port
        return self._client_factory(port)


def _agent_summary(agent: dict[str, Any]) -> str:
    return (
        f"{agent['id']} name={agent['name']} role={agent['role']} "
        f"status={agent['status']} pid={agent['pid'] or '-'} "
        f"restarts={agent['restartCount']} lines={agent['outputLineCount']}"
    )


def _job_file_path(path: Path | None) -> Path:
    if path is not None:
        return path
    return Settings.from_env().bridge.job_file_path


def _log_loop_event(event: LoopEvent) -> None:
    logger.info("Loop event: %s", event.to_dict())


def _wait(stop: threading.Event, max_runtime_seconds: float | None) -> None:
    deadline = None if max_runtime_seconds is None else time.monotonic() + max_runtime_seconds
    while not stop.is_set():
        if deadline is not None and time.monotonic() >= deadline:
            return
        stop.wait(0.2)


@contextmanager
def _signal_handlers(request_stop: Callable[[str], None]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT") or threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, shutting down", name)
        request_stop(name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
