"""Phase assignment and phase completion/failure evaluation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from quad.engine.models import (
    LOOP_PHASES,
    AgentConfig,
    AgentRole,
    AgentStatus,
    LoopPhase,
    LoopState,
    LoopStatus,
)
from quad.engine.registry import AgentRegistry
from quad.engine.state_machine import advance_phase, fail_phase, start_loop

ROLE_TO_PHASE: dict[AgentRole, LoopPhase] = {
    AgentRole.PLANNER: LoopPhase.PLAN,
    AgentRole.CODER: LoopPhase.CODE,
    AgentRole.AUDITOR: LoopPhase.AUDIT,
    AgentRole.REVIEWER: LoopPhase.AUDIT,
    AgentRole.CUSTOM: LoopPhase.CODE,
}

PhaseAssignments = dict[LoopPhase, tuple[str, ...]]


@dataclass(frozen=True, slots=True)
class OrchestratorResult:
    """Outcome of one phase evaluation."""

    state: LoopState
    advanced: bool
    failed: bool
    skipped_phases: tuple[LoopPhase, ...] = ()
    error_agent_id: str | None = None


@dataclass(frozen=True, slots=True)
class LoopInitResult:
    """Loop state after start plus the leading empty phases that were skipped."""

    state: LoopState
    skipped_phases: tuple[LoopPhase, ...] = ()


def create_phase_assignments() -> PhaseAssignments:
    return {phase: () for phase in LOOP_PHASES}


def assign_agents_by_role(configs: Iterable[AgentConfig]) -> PhaseAssignments:
    """Bucket agents into phases by role, keeping the input order."""

    buckets: dict[LoopPhase, list[str]] = {phase: [] for phase in LOOP_PHASES}
    for config in configs:
        buckets[ROLE_TO_PHASE[config.role]].append(config.id)
    return {phase: tuple(ids) for phase, ids in buckets.items()}


def assign_agents_to_phase(
    assignments: PhaseAssignments,
    phase: LoopPhase,
    configs: Iterable[AgentConfig],
) -> PhaseAssignments:
    """Replace one phase bucket.

    The moved agents are dropped from every other bucket so each agent stays
    in exactly one phase.
    """

    if phase not in LOOP_PHASES:
        raise ValueError(f"Cannot assign agents to phase {phase.value!r}")
    ids = tuple(config.id for config in configs)
    moved = set(ids)
    updated = {
        other: tuple(agent_id for agent_id in bucket if agent_id not in moved)
        for other, bucket in assignments.items()
    }
    updated[phase] = ids
    return updated


def agents_for_phase(assignments: PhaseAssignments, phase: LoopPhase) -> tuple[str, ...]:
    return assignments.get(phase, ())


def is_phase_complete(
    registry: AgentRegistry,
    assignments: PhaseAssignments,
    phase: LoopPhase,
) -> bool:
    """True when every agent of ``phase`` finished, or the phase has no agents."""

    agent_ids = agents_for_phase(assignments, phase)
    if not agent_ids:
        return True
    for agent_id in agent_ids:
        agent = registry.get(agent_id)
        if agent is None or agent.status is not AgentStatus.FINISHED:
            return False
    return True


def find_phase_error(
    registry: AgentRegistry,
    assignments: PhaseAssignments,
    phase: LoopPhase,
) -> str | None:
    """Id of the first errored agent of ``phase`` in assignment order."""

    for agent_id in agents_for_phase(assignments, phase):
        agent = registry.get(agent_id)
        if agent is not None and agent.status is AgentStatus.ERROR:
            return agent_id
    return None


def evaluate_phase(
    loop_state: LoopState,
    registry: AgentRegistry,
    assignments: PhaseAssignments,
    *,
    now: datetime | None = None,
) -> OrchestratorResult:
    """Decide whether the active phase failed, completed, or is still waiting.

    Errors are checked before completion: one errored agent fails the phase
    even when its peers already finished. On completion the loop advances
    and then skips forward through phases with no assigned agents.
    """

    if loop_state.status is not LoopStatus.RUNNING:
        return OrchestratorResult(state=loop_state, advanced=False, failed=False)

    phase = loop_state.current_phase
    error_agent_id = find_phase_error(registry, assignments, phase)
    if error_agent_id is not None:
        return OrchestratorResult(
            state=fail_phase(loop_state),
            advanced=False,
            failed=True,
            error_agent_id=error_agent_id,
        )

    if not is_phase_complete(registry, assignments, phase):
        return OrchestratorResult(state=loop_state, advanced=False, failed=False)

    state, skipped = _skip_empty_phases(
        advance_phase(loop_state, now=now),
        assignments,
        now=now,
    )
    return OrchestratorResult(state=state, advanced=True, failed=False, skipped_phases=skipped)


def initialize_loop(
    loop_state: LoopState,
    assignments: PhaseAssignments,
    *,
    now: datetime | None = None,
) -> LoopInitResult:
    """Start an idle loop and skip any leading phases without agents."""

    started = start_loop(loop_state, now=now)
    if started is loop_state:
        return LoopInitResult(state=loop_state)
    state, skipped = _skip_empty_phases(started, assignments, now=now)
    return LoopInitResult(state=state, skipped_phases=skipped)


def _skip_empty_phases(
    state: LoopState,
    assignments: PhaseAssignments,
    *,
    now: datetime | None,
) -> tuple[LoopState, tuple[LoopPhase, ...]]:
    skipped: list[LoopPhase] = []
    # At most one full lap, so an agentless loop cannot spin forever.
    for _ in LOOP_PHASES:
        if agents_for_phase(assignments, state.current_phase):
            break
        skipped.append(state.current_phase)
        state = advance_phase(state, now=now)
    return state, tuple(skipped)
