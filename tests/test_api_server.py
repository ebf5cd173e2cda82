from __future__ import annotations

import http.client
import json
from datetime import UTC, datetime

import allure
import httpx
import pytest

from quad.bridge.api_server import (
    ApiServer,
    route_request,
    sanitize_agent,
    serialize_loop_state,
)
from quad.config import SupervisorSettings
from quad.engine.models import AgentConfig, AgentState, AgentStatus, LoopState
from quad.engine.registry import AgentRegistry
from quad.engine.state_machine import reset_loop, start_loop
from quad.runtime import DuplicateAgentError, QuadRuntime

pytestmark = [
    allure.epic("HTTP API"),
    allure.feature("Routes & Serialization"),
]


class FakeBridge:
    def __init__(self) -> None:
        self.registry = AgentRegistry()
        self.loop = reset_loop()
        self.actions: list[str] = []
        self.fail_with: Exception | None = None

    def get_status(self) -> dict[str, object]:
        if self.fail_with is not None:
            raise self.fail_with
        return {"status": "idle", "currentPhase": "idle", "cycleCount": 0, "agentCount": len(self.registry)}

    def list_agents(self) -> list[AgentState]:
        return self.registry.all()

    def get_agent(self, agent_id: str) -> AgentState | None:
        return self.registry.get(agent_id)

    def add_agent(self, config: AgentConfig) -> AgentConfig:
        if config.id in self.registry:
            raise DuplicateAgentError(config.id)
        self.registry = self.registry.add(config)
        return config

    def remove_agent(self, agent_id: str) -> bool:
        updated = self.registry.remove(agent_id)
        removed = updated is not self.registry
        self.registry = updated
        return removed

    def get_loop_state(self) -> LoopState:
        return self.loop

    def start_loop(self) -> bool:
        self.actions.append("start")
        return True

    def pause_loop(self) -> bool:
        self.actions.append("pause")
        return True

    def reset_loop(self) -> None:
        self.actions.append("reset")


def _post(bridge: FakeBridge, payload: object):
    return route_request(bridge, "POST", "/api/agents", json.dumps(payload).encode())


def test_unknown_agent_returns_404_with_id() -> None:
    response = route_request(FakeBridge(), "GET", "/api/agents/ghost")

    assert response.status == 404
    assert "ghost" in response.payload["error"]
    assert route_request(FakeBridge(), "DELETE", "/api/agents/ghost").status == 404


@pytest.mark.parametrize("path", ["/", "/api", "/api/nope", "/other/status", "/api/loop/jump"])
def test_unknown_routes_return_404(path: str) -> None:
    response = route_request(FakeBridge(), "GET", path)

    assert response.status == 404
    assert response.payload == {"error": "Not found"}


def test_post_without_name_is_400() -> None:
    response = _post(FakeBridge(), {"command": "true"})

    assert response.status == 400
    assert response.payload == {"error": "Missing required field: name"}


def test_post_with_invalid_json_is_400() -> None:
    response = route_request(FakeBridge(), "POST", "/api/agents", b"{nope")

    assert response.status == 400
    assert response.payload == {"error": "Invalid JSON body"}


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "x", "role": "boss"},
        {"name": "x", "type": "vim"},
        {"name": "x", "args": "not-a-list"},
        {"name": "x", "args": [1, 2]},
    ],
)
def test_post_with_invalid_fields_is_400(payload: dict) -> None:
    assert _post(FakeBridge(), payload).status == 400


def test_post_with_only_name_generates_api_id() -> None:
    bridge = FakeBridge()

    response = _post(bridge, {"name": "Helper"})

    assert response.status == 201
    assert response.payload["id"].startswith("api-")
    assert response.payload == {
        "id": response.payload["id"],
        "name": "Helper",
        "type": "custom",
        "role": "custom",
        "command": "",
        "args": [],
    }
    assert response.payload["id"] in bridge.registry


def test_post_duplicate_id_is_409() -> None:
    bridge = FakeBridge()
    _post(bridge, {"name": "a", "id": "same"})

    response = _post(bridge, {"name": "b", "id": "same"})

    assert response.status == 409
    assert "same" in response.payload["error"]


def test_delete_removes_agent() -> None:
    bridge = FakeBridge()
    _post(bridge, {"name": "a", "id": "a1"})

    response = route_request(bridge, "DELETE", "/api/agents/a1")

    assert response.status == 200
    assert response.payload == {"removed": "a1"}


@pytest.mark.parametrize(("action", "label"), [("start", "started"), ("pause", "paused"), ("reset", "reset")])
def test_loop_actions(action: str, label: str) -> None:
    bridge = FakeBridge()

    response = route_request(bridge, "POST", f"/api/loop/{action}")

    assert response.payload == {"action": label}
    assert bridge.actions == [action]


def test_handler_exception_becomes_500() -> None:
    bridge = FakeBridge()
    bridge.fail_with = RuntimeError("kaput")

    response = route_request(bridge, "GET", "/api/status")

    assert response.status == 500
    assert "kaput" in response.payload["error"]


def test_agent_detail_truncates_recent_output() -> None:
    bridge = FakeBridge()
    bridge.add_agent(AgentConfig(id="a1", name="a1"))
    bridge.registry = bridge.registry.update("a1", output=tuple(f"l{i}" for i in range(80)))

    detail = route_request(bridge, "GET", "/api/agents/a1").payload
    summary = route_request(bridge, "GET", "/api/agents").payload[0]

    assert detail["recentOutput"] == [f"l{i}" for i in range(30, 80)]
    assert "recentOutput" not in summary
    assert summary["outputLineCount"] == 80


def test_serializers_use_iso_dates() -> None:
    started = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    state = start_loop(reset_loop(), now=started)
    agent = AgentState(
        config=AgentConfig(id="a1", name="a1"),
        status=AgentStatus.RUNNING,
        pid=10,
        started_at=started,
    )

    assert serialize_loop_state(state) == {
        "status": "running",
        "currentPhase": "plan",
        "cycleCount": 0,
        "phaseStartedAt": "2026-03-01T12:00:00+00:00",
        "phaseResults": {"plan": "pending", "code": "pending", "audit": "pending", "push": "pending"},
    }
    assert sanitize_agent(agent)["startedAt"] == "2026-03-01T12:00:00+00:00"
    assert sanitize_agent(agent)["status"] == "running"


@pytest.fixture()
def live_server():
    runtime = QuadRuntime(settings=SupervisorSettings(terminate_grace_seconds=1.0)).start()
    server = ApiServer(runtime, port=0).start()
    yield runtime, server
    server.close()
    runtime.shutdown()


def test_live_server_counts_every_request(live_server) -> None:
    _, server = live_server
    assert server.port != 0

    with httpx.Client(base_url=server.url) as client:
        assert client.get("/api/status").json()["agentCount"] == 0
        assert client.get("/api/missing").status_code == 404
        created = client.post("/api/agents", json={"name": "Echo", "command": "echo hi"})
        assert created.status_code == 201
        agent_id = created.json()["id"]
        assert client.get(f"/api/agents/{agent_id}").status_code == 200
        assert client.delete(f"/api/agents/{agent_id}").json() == {"removed": agent_id}

    assert server.request_count == 5


def test_live_server_loop_routes(live_server) -> None:
    _, server = live_server

    with httpx.Client(base_url=server.url) as client:
        assert client.post("/api/loop/start").json() == {"action": "started"}
        assert client.get("/api/loop").json()["status"] == "running"
        assert client.post("/api/loop/pause").json() == {"action": "paused"}
        assert client.post("/api/loop/reset").json() == {"action": "reset"}
        assert client.get("/api/loop").json()["status"] == "idle"


def test_live_server_rejects_bad_content_length(live_server) -> None:
    runtime, server = live_server
    connection = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        connection.putrequest("POST", "/api/agents")
        connection.putheader("Content-Length", "abc")
        connection.endheaders()
        response = connection.getresponse()
        payload = json.loads(response.read())
    finally:
        connection.close()

    assert response.status == 400
    assert payload == {"error": "Invalid Content-Length: abc"}
    assert server.request_count == 1
    assert runtime.list_agents() == []
