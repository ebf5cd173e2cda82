"""Pure phase/cycle transitions over ``LoopState``.

Every reducer returns the *same object* when the transition does not apply
to the current status, and a new ``LoopState`` otherwise. The input is
never mutated.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from quad.common import utc_now
from quad.engine.models import (
    LOOP_PHASES,
    LoopPhase,
    LoopState,
    LoopStatus,
    PhaseResult,
    pending_phase_results,
)


def reset_loop() -> LoopState:
    """Fresh idle loop: cycle 0, every phase pending."""

    return LoopState()


def start_loop(state: LoopState, *, now: datetime | None = None) -> LoopState:
    """Start an idle loop at ``plan``."""

    if state.status is not LoopStatus.IDLE:
        return state
    return replace(
        state,
        current_phase=LoopPhase.PLAN,
        status=LoopStatus.RUNNING,
        phase_started_at=now or utc_now(),
        phase_results=pending_phase_results(),
    )


def advance_phase(state: LoopState, *, now: datetime | None = None) -> LoopState:
    """Mark the current phase successful and move to the next one.

    Leaving ``push`` wraps to ``plan``, bumps ``cycle_count`` and resets all
    phase results to pending.
    """

    if state.status is not LoopStatus.RUNNING:
        return state

    started_at = now or utc_now()
    if state.current_phase not in LOOP_PHASES:
        results = dict(state.phase_results)
        results[LoopPhase.PLAN] = PhaseResult.PENDING
        return replace(
            state,
            current_phase=LoopPhase.PLAN,
            phase_started_at=started_at,
            phase_results=results,
        )

    index = LOOP_PHASES.index(state.current_phase)
    if index == len(LOOP_PHASES) - 1:
        return replace(
            state,
            current_phase=LOOP_PHASES[0],
            cycle_count=state.cycle_count + 1,
            phase_started_at=started_at,
            phase_results=pending_phase_results(),
        )

    next_phase = LOOP_PHASES[index + 1]
    results = dict(state.phase_results)
    results[state.current_phase] = PhaseResult.SUCCESS
    results[next_phase] = PhaseResult.PENDING
    return replace(
        state,
        current_phase=next_phase,
        phase_started_at=started_at,
        phase_results=results,
    )


def fail_phase(state: LoopState) -> LoopState:
    """Mark the current phase failed and halt the loop until reset."""

    if state.status is not LoopStatus.RUNNING:
        return state
    results = dict(state.phase_results)
    results[state.current_phase] = PhaseResult.FAILED
    return replace(state, status=LoopStatus.ERROR, phase_results=results)


def pause_loop(state: LoopState) -> LoopState:
    if state.status is not LoopStatus.RUNNING:
        return state
    return replace(state, status=LoopStatus.PAUSED)


def resume_loop(state: LoopState) -> LoopState:
    if state.status is not LoopStatus.PAUSED:
        return state
    return replace(state, status=LoopStatus.RUNNING)
