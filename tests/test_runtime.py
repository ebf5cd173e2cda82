from __future__ import annotations

import os
import threading

import allure
import pytest

from quad.config import SupervisorSettings
from quad.engine.driver import LoopEvent, LoopEventType
from quad.engine.models import AgentRole, AgentStatus, LoopPhase, LoopStatus
from quad.engine.registry import AgentRegistry
from quad.runtime import DuplicateAgentError, QuadRuntime, RuntimeStoppedError

pytestmark = [
    allure.epic("Loop Engine"),
    allure.feature("Control Thread Runtime"),
]


@pytest.fixture()
def runtime():
    runtime = QuadRuntime(settings=SupervisorSettings(terminate_grace_seconds=1.0)).start()
    yield runtime
    runtime.shutdown()


def test_call_runs_on_control_thread(runtime: QuadRuntime) -> None:
    name = runtime.call(lambda: threading.current_thread().name)

    assert name == "quad-control"


def test_submit_after_shutdown_is_rejected() -> None:
    runtime = QuadRuntime().start()
    runtime.shutdown()
    runtime.shutdown()

    with pytest.raises(RuntimeStoppedError):
        runtime.submit(lambda: None)


def test_added_agent_runs_and_finishes(runtime: QuadRuntime, make_config, wait_until) -> None:
    runtime.add_agent(make_config("a1", command="echo done"))

    assert wait_until(lambda: runtime.get_agent("a1").status is AgentStatus.FINISHED)
    agent = runtime.get_agent("a1")
    assert agent.output == ("done",)
    assert agent.pid is not None


def test_duplicate_agent_id_is_rejected(runtime: QuadRuntime, make_config) -> None:
    runtime.add_agent(make_config("a1"))

    with pytest.raises(DuplicateAgentError, match="a1"):
        runtime.add_agent(make_config("a1"))


def test_remove_agent_kills_process_and_unregisters(runtime: QuadRuntime, make_config) -> None:
    runtime.add_agent(make_config("a1", command="sleep 30"))

    assert runtime.remove_agent("a1") is True
    assert runtime.get_agent("a1") is None
    assert runtime.remove_agent("a1") is False


def test_snapshots_are_immutable_views(runtime: QuadRuntime, make_config) -> None:
    before = runtime.snapshot()

    runtime.add_agent(make_config("a1", command="sleep 30"))

    assert len(before) == 0
    assert "a1" in runtime.snapshot()


def test_loop_advances_when_phase_agents_finish(runtime: QuadRuntime, make_config, wait_until) -> None:
    events: list[LoopEvent] = []
    runtime.add_loop_listener(events.append)
    runtime.add_agent(make_config("p1", role=AgentRole.PLANNER, command="sleep 0.3"))
    runtime.add_agent(make_config("c1", role=AgentRole.CODER, command="sleep 30"))

    assert runtime.start_loop() is True
    assert runtime.loop_state.current_phase is LoopPhase.PLAN

    assert wait_until(lambda: runtime.loop_state.current_phase is LoopPhase.CODE)
    assert LoopEventType.PHASE_ADVANCE in {event.type for event in events}


def test_loop_fails_when_phase_agent_errors(runtime: QuadRuntime, make_config, wait_until) -> None:
    runtime.add_agent(make_config("p1", role=AgentRole.PLANNER, command="sleep 0.3; exit 2"))
    runtime.start_loop()

    assert wait_until(lambda: runtime.loop_state.status is LoopStatus.ERROR)

    runtime.reset_loop()
    assert runtime.loop_state.status is LoopStatus.IDLE


def test_pause_and_resume(runtime: QuadRuntime, make_config) -> None:
    runtime.add_agent(make_config("p1", role=AgentRole.PLANNER, command="sleep 30"))
    runtime.start_loop()

    assert runtime.pause_loop() is True
    assert runtime.loop_state.status is LoopStatus.PAUSED
    assert runtime.resume_loop() is True
    assert runtime.loop_state.status is LoopStatus.RUNNING


def test_registry_listener_sees_every_change(runtime: QuadRuntime, make_config, wait_until) -> None:
    seen: list[AgentRegistry] = []
    runtime.add_registry_listener(seen.append)

    runtime.add_agent(make_config("a1", command="echo hi"))

    assert wait_until(
        lambda: any(
            (agent := registry.get("a1")) is not None and agent.status is AgentStatus.FINISHED
            for registry in list(seen)
        ),
    )
    runtime.remove_registry_listener(seen.append)


def test_get_status_reports_loop_and_agent_count(runtime: QuadRuntime, make_config) -> None:
    runtime.add_agent(make_config("a1", command="sleep 30"))

    assert runtime.get_status() == {
        "status": "idle",
        "currentPhase": "idle",
        "cycleCount": 0,
        "agentCount": 1,
    }


def test_shutdown_terminates_agent_processes(make_config, wait_until) -> None:
    runtime = QuadRuntime(settings=SupervisorSettings(terminate_grace_seconds=1.0)).start()
    runtime.add_agent(make_config("a1", command="sleep 30"))
    assert wait_until(lambda: runtime.get_agent("a1").pid is not None)
    pid = runtime.get_agent("a1").pid

    runtime.shutdown()

    def _gone() -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        return False

    assert wait_until(_gone)
