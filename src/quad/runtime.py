"""Single control thread that owns the agent registry and the loop driver.

All mutations are messages executed in order on one thread. Supervisors,
the job bridge and the API server only ever post messages or read
immutable snapshots, so neither structure is shared mutable state.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from functools import partial
from typing import TypeVar

from quad.config import SupervisorSettings
from quad.engine.driver import LoopDriver, LoopEventListener
from quad.engine.models import AgentConfig, AgentState, LoopState
from quad.engine.orchestrator import PhaseAssignments
from quad.engine.registry import AgentRegistry
from quad.process.supervisor import ProcessSnapshot, ProcessSupervisor

logger = logging.getLogger(__name__)

T = TypeVar("T")
RegistryListener = Callable[[AgentRegistry], None]


class DuplicateAgentError(ValueError):
    """An agent with the same id is already registered."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent already exists: {agent_id}")
        self.agent_id = agent_id


class RuntimeStoppedError(RuntimeError):
    """The control thread is not accepting messages."""


class QuadRuntime:
    """Owner of ``AgentRegistry``, ``LoopDriver`` and every ``ProcessSupervisor``."""

    def __init__(self, *, settings: SupervisorSettings | None = None) -> None:
        self.settings = settings or SupervisorSettings()
        self._registry = AgentRegistry()
        self._driver = LoopDriver()
        self._supervisors: dict[str, ProcessSupervisor] = {}
        self._registry_listeners: list[RegistryListener] = []
        self._inbox: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._accepting = False

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> QuadRuntime:
        if self._thread is not None:
            return self
        self._accepting = True
        self._thread = threading.Thread(target=self._run, name="quad-control", daemon=True)
        self._thread.start()
        logger.info("Control thread started")
        return self

    def shutdown(self, timeout: float = 10.0) -> None:
        """Close every supervisor and stop the control thread. Idempotent."""

        if not self._accepting:
            return
        self._accepting = False
        thread = self._thread
        if thread is None or not thread.is_alive() or self._on_control_thread():
            self._close_supervisors()
            return
        self._inbox.put(self._close_supervisors)
        self._inbox.put(None)
        thread.join(timeout)
        logger.info("Control thread stopped")

    def __enter__(self) -> QuadRuntime:
        return self.start()

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    # -- messaging -------------------------------------------------------------

    def submit(self, fn: Callable[[], T]) -> Future[T]:
        """Queue ``fn`` for the control thread and return its future."""

        if not self._accepting:
            raise RuntimeStoppedError("Runtime is not running.")
        future: Future[T] = Future()

        def _message() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn())
            except BaseException as error:  # noqa: BLE001
                future.set_exception(error)

        self._inbox.put(_message)
        return future

    def call(self, fn: Callable[[], T], timeout: float | None = 30.0) -> T:
        """Run ``fn`` on the control thread and wait for its result."""

        if self._on_control_thread():
            return fn()
        return self.submit(fn).result(timeout=timeout)

    def post(self, fn: Callable[[], None]) -> None:
        """Fire-and-forget message; dropped once the runtime is stopping."""

        if not self._accepting:
            return
        self._inbox.put(fn)

    def _run(self) -> None:
        while True:
            message = self._inbox.get()
            if message is None:
                return
            try:
                message()
            except Exception:
                logger.exception("Control message failed")

    def _on_control_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    # -- read side -------------------------------------------------------------

    def snapshot(self) -> AgentRegistry:
        return self._registry

    @property
    def loop_state(self) -> LoopState:
        return self._driver.state

    @property
    def assignments(self) -> PhaseAssignments:
        return self._driver.assignments

    def list_agents(self) -> list[AgentState]:
        return self._registry.all()

    def get_agent(self, agent_id: str) -> AgentState | None:
        return self._registry.get(agent_id)

    def get_loop_state(self) -> LoopState:
        return self._driver.state

    def get_status(self) -> dict[str, object]:
        state = self._driver.state
        return {
            "status": state.status.value,
            "currentPhase": state.current_phase.value,
            "cycleCount": state.cycle_count,
            "agentCount": len(self._registry),
        }

    # -- commands --------------------------------------------------------------

    def add_agent(self, config: AgentConfig) -> AgentConfig:
        """Register and immediately run a new agent."""

        return self.call(partial(self._add_agent, config))

    def remove_agent(self, agent_id: str) -> bool:
        """Kill and unregister an agent. False if the id is unknown."""

        return self.call(partial(self._remove_agent, agent_id))

    def start_loop(self) -> bool:
        return self.call(self._driver.start)

    def pause_loop(self) -> bool:
        return self.call(self._driver.pause)

    def resume_loop(self) -> bool:
        return self.call(self._driver.resume)

    def reset_loop(self) -> None:
        self.call(self._driver.reset)

    def add_loop_listener(self, listener: LoopEventListener) -> None:
        self.call(partial(self._driver.add_listener, listener))

    def remove_loop_listener(self, listener: LoopEventListener) -> None:
        self.call(partial(self._driver.remove_listener, listener))

    def add_registry_listener(self, listener: RegistryListener) -> None:
        self.call(partial(self._registry_listeners.append, listener))

    def remove_registry_listener(self, listener: RegistryListener) -> None:
        def _remove() -> None:
            if listener in self._registry_listeners:
                self._registry_listeners.remove(listener)

        self.call(_remove)

    # -- control-thread handlers -----------------------------------------------

    def _add_agent(self, config: AgentConfig) -> AgentConfig:
        if config.id in self._registry:
            raise DuplicateAgentError(config.id)

        def _on_change(snapshot: ProcessSnapshot) -> None:
            self.post(partial(self._apply_snapshot, supervisor, snapshot))

        supervisor = ProcessSupervisor(
            config,
            on_change=_on_change,
            output_limit=self.settings.output_limit,
            auto_restart=self.settings.auto_restart,
            max_restarts=self.settings.max_restarts,
            restart_backoff_seconds=self.settings.restart_backoff_seconds,
            terminate_grace_seconds=self.settings.terminate_grace_seconds,
        )
        self._supervisors[config.id] = supervisor
        self._set_registry(self._registry.add(config), observe=True)
        logger.info("Agent %s added (role=%s)", config.id, config.role.value)
        supervisor.run()
        return config

    def _remove_agent(self, agent_id: str) -> bool:
        supervisor = self._supervisors.pop(agent_id, None)
        if supervisor is not None:
            supervisor.close()
        updated = self._registry.remove(agent_id)
        if updated is self._registry:
            return supervisor is not None
        self._set_registry(updated, observe=True)
        logger.info("Agent %s removed", agent_id)
        return True

    def _apply_snapshot(self, supervisor: ProcessSupervisor, snapshot: ProcessSnapshot) -> None:
        if self._supervisors.get(snapshot.agent_id) is not supervisor:
            return
        previous = self._registry.get(snapshot.agent_id)
        updated = self._registry.update(snapshot.agent_id, **snapshot.as_changes())
        if previous is None or updated is self._registry:
            return
        self._set_registry(updated, observe=previous.status is not snapshot.status)

    def _set_registry(self, registry: AgentRegistry, *, observe: bool) -> None:
        self._registry = registry
        if observe:
            self._driver.observe(registry)
        for listener in list(self._registry_listeners):
            try:
                listener(registry)
            except Exception:
                logger.exception("Registry listener failed")

    def _close_supervisors(self) -> None:
        supervisors = list(self._supervisors.values())
        self._supervisors.clear()
        for supervisor in supervisors:
            supervisor.close()
        if supervisors:
            logger.info("Closed %d agent supervisor(s)", len(supervisors))
