"""Per-agent OS process supervision.

One ``ProcessSupervisor`` owns at most one running shell process for an
agent. It merges stdout/stderr into a bounded line buffer, reports every
state change through ``on_change`` and optionally restarts failed runs with
a fixed, cancellable backoff.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from quad.common import utc_now
from quad.engine.models import AgentConfig, AgentStatus

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT = 20
DEFAULT_MAX_RESTARTS = 3
DEFAULT_RESTART_BACKOFF_SECONDS = 3.0
DEFAULT_TERMINATE_GRACE_SECONDS = 2.0

_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ProcessSpawnError(RuntimeError):
    """The OS could not create the agent process."""

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message)
        self.command = command


@dataclass(frozen=True, slots=True)
class ProcessSnapshot:
    """Point-in-time view of a supervised process."""

    agent_id: str
    status: AgentStatus
    output: tuple[str, ...]
    pid: int | None
    started_at: datetime | None
    error: str | None
    restart_count: int

    def as_changes(self) -> dict[str, Any]:
        """Fields to merge into the agent's registry entry."""

        return {
            "status": self.status,
            "output": self.output,
            "pid": self.pid,
            "started_at": self.started_at,
            "error": self.error,
            "restart_count": self.restart_count,
        }


SnapshotListener = Callable[[ProcessSnapshot], None]


def build_command_line(config: AgentConfig) -> str:
    """Shell command line: the raw command followed by quoted arguments."""

    if not config.args:
        return config.command
    return " ".join([config.command, *(shlex.quote(arg) for arg in config.args)])


def build_agent_env(config: AgentConfig) -> dict[str, str]:
    env = os.environ.copy()
    env["QUAD_AGENT_ID"] = config.id
    env["QUAD_AGENT_ROLE"] = config.role.value
    env["QUAD_AGENT_TYPE"] = config.type.value
    if config.task:
        env["QUAD_TASK"] = config.task
    return env


class ProcessSupervisor:
    """Run, capture, restart and kill one agent process."""

    def __init__(  # noqa: PLR0913
        self,
        config: AgentConfig,
        *,
        on_change: SnapshotListener | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        auto_restart: bool = False,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        restart_backoff_seconds: float = DEFAULT_RESTART_BACKOFF_SECONDS,
        terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        if output_limit < 1:
            raise ValueError("output_limit must be >= 1")
        self.config = config
        self.auto_restart = auto_restart
        self.max_restarts = max_restarts
        self.restart_backoff_seconds = restart_backoff_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self._on_change = on_change
        self._lock = threading.Lock()
        self._notify_lock = threading.Lock()
        self._output: deque[str] = deque(maxlen=output_limit)
        self._status = AgentStatus.IDLE
        self._process: subprocess.Popen[str] | None = None
        self._pid: int | None = None
        self._started_at: datetime | None = None
        self._error: str | None = None
        self._restart_count = 0
        self._restart_timer: threading.Timer | None = None
        self._restart_generation = 0
        self._closed = False

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def restart_pending(self) -> bool:
        return self._restart_timer is not None

    def snapshot(self) -> ProcessSnapshot:
        with self._lock:
            return ProcessSnapshot(
                agent_id=self.config.id,
                status=self._status,
                output=tuple(self._output),
                pid=self._pid,
                started_at=self._started_at,
                error=self._error,
                restart_count=self._restart_count,
            )

    def run(self) -> bool:
        """Spawn the agent command. No-op while a process is alive."""

        with self._lock:
            if self._closed or self._process is not None:
                return False
            self._cancel_restart_locked()
            started = self._spawn_locked(fresh=True)
        self._notify()
        return started

    def kill(self) -> None:
        """Terminate the process group and force a terminal ``finished`` status."""

        with self._lock:
            self._cancel_restart_locked()
            process = self._process
            self._process = None
            self._status = AgentStatus.FINISHED
            self._error = None
        if process is not None:
            _terminate_process_group(process, self.terminate_grace_seconds)
            logger.info("Agent %s killed (pid=%s)", self.config.id, process.pid)
        self._notify()

    def close(self) -> None:
        """Teardown: cancel restarts and terminate the process without reporting."""

        with self._lock:
            self._closed = True
            self._cancel_restart_locked()
            process = self._process
            self._process = None
        if process is not None:
            _terminate_process_group(process, self.terminate_grace_seconds)

    def _spawn_locked(self, *, fresh: bool) -> bool:
        if fresh:
            self._output.clear()
            self._restart_count = 0
        self._error = None
        command_line = build_command_line(self.config)
        try:
            process = subprocess.Popen(  # noqa: S602
                command_line,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=build_agent_env(self.config),
                start_new_session=True,
            )
        except OSError as error:
            spawn_error = ProcessSpawnError(
                f"Failed to start agent {self.config.id}: {error}",
                command=command_line,
            )
            self._status = AgentStatus.ERROR
            self._error = str(spawn_error)
            self._pid = None
            self._output.append(f"Error: {error}")
            logger.warning("%s", spawn_error)
            return False

        self._process = process
        self._pid = process.pid
        self._started_at = utc_now()
        self._status = AgentStatus.RUNNING
        threading.Thread(
            target=self._pump,
            args=(process,),
            name=f"quad-agent-{self.config.id}",
            daemon=True,
        ).start()
        logger.info("Agent %s started (pid=%s)", self.config.id, process.pid)
        return True

    def _pump(self, process: subprocess.Popen[str]) -> None:
        stream = process.stdout
        if stream is not None:
            for raw_line in stream:
                self._append_output(process, raw_line)
            stream.close()
        self._handle_exit(process, process.wait())

    def _append_output(self, process: subprocess.Popen[str], raw_line: str) -> None:
        line = raw_line.rstrip("\r\n")
        if not line:
            return
        with self._lock:
            if self._process is not process:
                return
            self._output.append(line)
        self._notify()

    def _handle_exit(self, process: subprocess.Popen[str], returncode: int) -> None:
        with self._lock:
            if self._process is not process:
                return
            self._process = None
            if returncode == 0:
                self._status = AgentStatus.FINISHED
                logger.info("Agent %s finished", self.config.id)
            else:
                self._status = AgentStatus.ERROR
                self._error = f"Process exited with code {returncode}"
                logger.info("Agent %s exited with code %s", self.config.id, returncode)
                if self.auto_restart and self._restart_count < self.max_restarts:
                    self._schedule_restart_locked()
        self._notify()

    def _schedule_restart_locked(self) -> None:
        delay = self.restart_backoff_seconds
        attempt = self._restart_count + 1
        self._output.append(f"Restarting in {delay:g}s (attempt {attempt}/{self.max_restarts})")
        self._restart_generation += 1
        timer = threading.Timer(delay, self._restart, args=(self._restart_generation,))
        timer.daemon = True
        self._restart_timer = timer
        timer.start()
        logger.warning(
            "Agent %s restart %d/%d scheduled in %gs",
            self.config.id,
            attempt,
            self.max_restarts,
            delay,
        )

    def _restart(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._restart_generation:
                return
            if self._restart_timer is None or self._process is not None:
                return
            self._restart_timer = None
            self._restart_count += 1
            self._spawn_locked(fresh=False)
        self._notify()

    def _cancel_restart_locked(self) -> None:
        self._restart_generation += 1
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def _notify(self) -> None:
        if self._on_change is None:
            return
        # Snapshots are taken under the notify lock so listeners see them in order.
        with self._notify_lock:
            self._on_change(self.snapshot())


def _terminate_process_group(process: subprocess.Popen[str], grace_seconds: float) -> None:
    try:
        _signal_group(process, signal.SIGTERM)
    except OSError:
        pass
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            _signal_group(process, _KILL_SIGNAL)
        except OSError:
            return
        process.wait(timeout=grace_seconds)
    # Sweep descendants that ignored SIGTERM after the shell itself exited.
    try:
        _signal_group(process, _KILL_SIGNAL)
    except OSError:
        return


def _signal_group(process: subprocess.Popen[str], sig: int) -> None:
    if os.name == "nt":
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
        return
    os.killpg(process.pid, sig)
