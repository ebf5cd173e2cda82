"""Loop driver: re-evaluates the active phase whenever agent status changes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from quad.common import utc_now
from quad.engine.models import LoopPhase, LoopState, LoopStatus
from quad.engine.orchestrator import (
    OrchestratorResult,
    PhaseAssignments,
    assign_agents_by_role,
    create_phase_assignments,
    evaluate_phase,
    initialize_loop,
)
from quad.engine.registry import AgentRegistry
from quad.engine.state_machine import pause_loop, reset_loop, resume_loop

logger = logging.getLogger(__name__)


class LoopEventType(str, Enum):
    """Kinds of events emitted by the driver."""

    PHASE_ADVANCE = "phase-advance"
    PHASE_FAIL = "phase-fail"
    CYCLE_COMPLETE = "cycle-complete"
    LOOP_STARTED = "loop-started"
    LOOP_PAUSED = "loop-paused"
    LOOP_RESUMED = "loop-resumed"
    LOOP_RESET = "loop-reset"


@dataclass(frozen=True, slots=True)
class LoopEvent:
    """One loop transition notification."""

    type: LoopEventType
    phase: LoopPhase | None = None
    from_phase: LoopPhase | None = None
    to_phase: LoopPhase | None = None
    skipped: tuple[LoopPhase, ...] = ()
    cycle_count: int | None = None
    error_agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.type is LoopEventType.PHASE_FAIL:
            payload["phase"] = self.phase.value if self.phase else None
            if self.error_agent_id is not None:
                payload["errorAgentId"] = self.error_agent_id
        elif self.type is LoopEventType.PHASE_ADVANCE:
            payload["from"] = self.from_phase.value if self.from_phase else None
            payload["to"] = self.to_phase.value if self.to_phase else None
            payload["skipped"] = [phase.value for phase in self.skipped]
        elif self.type is LoopEventType.CYCLE_COMPLETE:
            payload["cycleCount"] = self.cycle_count
        return payload


LoopEventListener = Callable[[LoopEvent], None]


class LoopDriver:
    """Owns the current ``LoopState`` and ``PhaseAssignments``.

    Not thread-safe: the runtime control thread is its only caller, which
    keeps evaluations strictly sequential.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._state = reset_loop()
        self._assignments = create_phase_assignments()
        self._agent_ids: tuple[str, ...] = ()
        self._listeners: list[LoopEventListener] = []

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def assignments(self) -> PhaseAssignments:
        return self._assignments

    def add_listener(self, listener: LoopEventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: LoopEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def sync_agents(self, registry: AgentRegistry) -> bool:
        """Rebuild phase assignments if the set of agents changed."""

        agent_ids = registry.ids()
        if agent_ids == self._agent_ids:
            return False
        self._agent_ids = agent_ids
        self._assignments = assign_agents_by_role(registry.configs())
        return True

    def set_assignments(self, assignments: PhaseAssignments) -> None:
        """Install custom assignments (kept until the agent set changes)."""

        self._assignments = dict(assignments)

    def observe(self, registry: AgentRegistry) -> OrchestratorResult | None:
        """Handle one observed agent change; runs at most one evaluation."""

        self.sync_agents(registry)
        previous = self._state
        if previous.status is not LoopStatus.RUNNING:
            return None

        result = evaluate_phase(previous, registry, self._assignments, now=self._clock())
        if result.failed:
            self._state = result.state
            logger.warning(
                "Phase %s failed (agent %s)",
                previous.current_phase.value,
                result.error_agent_id,
            )
            self._emit(
                LoopEvent(
                    type=LoopEventType.PHASE_FAIL,
                    phase=previous.current_phase,
                    error_agent_id=result.error_agent_id,
                ),
            )
        elif result.advanced:
            self._state = result.state
            logger.info(
                "Phase %s -> %s (skipped: %s)",
                previous.current_phase.value,
                result.state.current_phase.value,
                ",".join(phase.value for phase in result.skipped_phases) or "-",
            )
            self._emit(
                LoopEvent(
                    type=LoopEventType.PHASE_ADVANCE,
                    from_phase=previous.current_phase,
                    to_phase=result.state.current_phase,
                    skipped=result.skipped_phases,
                ),
            )
            if result.state.cycle_count > previous.cycle_count:
                self._emit(
                    LoopEvent(
                        type=LoopEventType.CYCLE_COMPLETE,
                        cycle_count=result.state.cycle_count,
                    ),
                )
        return result

    def start(self) -> bool:
        """Resume a paused loop, or start an idle one."""

        if self._state.status is LoopStatus.PAUSED:
            return self.resume()

        init = initialize_loop(self._state, self._assignments, now=self._clock())
        if init.state is self._state:
            return False
        self._state = init.state
        logger.info("Loop started at %s", init.state.current_phase.value)
        self._emit(LoopEvent(type=LoopEventType.LOOP_STARTED))
        if init.skipped_phases:
            self._emit(
                LoopEvent(
                    type=LoopEventType.PHASE_ADVANCE,
                    from_phase=LoopPhase.PLAN,
                    to_phase=init.state.current_phase,
                    skipped=init.skipped_phases,
                ),
            )
        return True

    def pause(self) -> bool:
        paused = pause_loop(self._state)
        if paused is self._state:
            return False
        self._state = paused
        logger.info("Loop paused at %s", paused.current_phase.value)
        self._emit(LoopEvent(type=LoopEventType.LOOP_PAUSED))
        return True

    def resume(self) -> bool:
        resumed = resume_loop(self._state)
        if resumed is self._state:
            return False
        self._state = resumed
        logger.info("Loop resumed at %s", resumed.current_phase.value)
        self._emit(LoopEvent(type=LoopEventType.LOOP_RESUMED))
        return True

    def reset(self) -> None:
        self._state = reset_loop()
        logger.info("Loop reset")
        self._emit(LoopEvent(type=LoopEventType.LOOP_RESET))

    def _emit(self, event: LoopEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Loop event listener failed for %s", event.type.value)
