from __future__ import annotations

from datetime import UTC, datetime

import allure

from quad.engine.driver import LoopDriver, LoopEvent, LoopEventType
from quad.engine.models import AgentConfig, AgentRole, AgentStatus, LoopPhase, LoopStatus
from quad.engine.registry import AgentRegistry

pytestmark = [
    allure.epic("Loop Engine"),
    allure.feature("Loop Driver"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _driver() -> tuple[LoopDriver, list[LoopEvent]]:
    driver = LoopDriver(clock=lambda: NOW)
    events: list[LoopEvent] = []
    driver.add_listener(events.append)
    return driver, events


def _registry(*configs: AgentConfig) -> AgentRegistry:
    registry = AgentRegistry()
    for config in configs:
        registry = registry.add(config)
    return registry


PLANNER = AgentConfig(id="p1", name="Planner", role=AgentRole.PLANNER)
CODER = AgentConfig(id="c1", name="Coder", role=AgentRole.CODER)


def test_observe_rebuilds_assignments_when_agent_set_changes() -> None:
    driver, _ = _driver()

    driver.observe(_registry(PLANNER, CODER))

    assert driver.assignments[LoopPhase.PLAN] == ("p1",)
    assert driver.assignments[LoopPhase.CODE] == ("c1",)


def test_observe_does_nothing_while_loop_is_idle() -> None:
    driver, events = _driver()
    registry = _registry(PLANNER).update("p1", status=AgentStatus.FINISHED)

    assert driver.observe(registry) is None
    assert driver.state.status is LoopStatus.IDLE
    assert events == []


def test_phase_advance_and_cycle_complete_events() -> None:
    driver, events = _driver()
    registry = _registry(PLANNER)
    driver.observe(registry)
    driver.start()
    events.clear()

    driver.observe(registry.update("p1", status=AgentStatus.FINISHED))

    assert [event.type for event in events] == [
        LoopEventType.PHASE_ADVANCE,
        LoopEventType.CYCLE_COMPLETE,
    ]
    advance = events[0].to_dict()
    assert advance == {
        "type": "phase-advance",
        "from": "plan",
        "to": "plan",
        "skipped": ["code", "audit", "push"],
    }
    assert events[1].to_dict() == {"type": "cycle-complete", "cycleCount": 1}


def test_phase_fail_event_halts_loop() -> None:
    driver, events = _driver()
    registry = _registry(PLANNER)
    driver.observe(registry)
    driver.start()

    driver.observe(registry.update("p1", status=AgentStatus.ERROR))

    assert driver.state.status is LoopStatus.ERROR
    assert events[-1].to_dict() == {"type": "phase-fail", "phase": "plan", "errorAgentId": "p1"}
    driver.observe(registry.update("p1", status=AgentStatus.FINISHED))
    assert driver.state.status is LoopStatus.ERROR


def test_start_resumes_paused_loop() -> None:
    driver, events = _driver()
    driver.observe(_registry(PLANNER))
    driver.start()
    driver.pause()

    assert driver.start() is True
    assert driver.state.status is LoopStatus.RUNNING
    assert [event.type for event in events] == [
        LoopEventType.LOOP_STARTED,
        LoopEventType.LOOP_PAUSED,
        LoopEventType.LOOP_RESUMED,
    ]


def test_start_skipping_leading_phases_emits_phase_advance_from_plan() -> None:
    driver, events = _driver()
    driver.observe(_registry(CODER))

    driver.start()

    assert driver.state.current_phase is LoopPhase.CODE
    assert events[-1].to_dict() == {
        "type": "phase-advance",
        "from": "plan",
        "to": "code",
        "skipped": ["plan"],
    }


def test_reset_always_emits_and_returns_to_idle() -> None:
    driver, events = _driver()

    driver.reset()
    driver.observe(_registry(PLANNER))
    driver.start()
    driver.reset()

    assert driver.state.status is LoopStatus.IDLE
    assert [event.type for event in events].count(LoopEventType.LOOP_RESET) == 2


def test_failing_listener_does_not_block_others() -> None:
    driver, events = _driver()

    def _broken(_: LoopEvent) -> None:
        raise RuntimeError("boom")

    driver.add_listener(_broken)
    driver.add_listener(events.append)
    driver.reset()

    assert len(events) == 1


def test_remove_listener_stops_delivery() -> None:
    driver, events = _driver()
    driver.remove_listener(events.append)

    driver.reset()

    assert events == []
