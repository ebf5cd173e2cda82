"""Loopback HTTP API over the runtime.

Routing is a pure function (``route_request``) so it can be exercised
without sockets; ``ApiServer`` wires it into a ``ThreadingHTTPServer``.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol
from urllib import parse as urllib_parse
from uuid import uuid4

from quad.common import to_iso
from quad.config import DEFAULT_API_HOST, DEFAULT_API_PORT
from quad.engine.models import AgentConfig, AgentRole, AgentState, AgentType, LoopState
from quad.runtime import DuplicateAgentError

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
DETAIL_OUTPUT_LINES = 50
_LOOP_ACTIONS = {"start": "started", "pause": "paused", "reset": "reset"}


class ApiRequestError(Exception):
    """Client error mapped to a 4xx ``{"error": ...}`` response."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass(frozen=True, slots=True)
class ApiResponse:
    status: int
    payload: Any


class ApiBridge(Protocol):
    """Operations the API translates requests onto."""

    def get_status(self) -> dict[str, object]: ...

    def list_agents(self) -> list[AgentState]: ...

    def get_agent(self, agent_id: str) -> AgentState | None: ...

    def add_agent(self, config: AgentConfig) -> AgentConfig: ...

    def remove_agent(self, agent_id: str) -> bool: ...

    def get_loop_state(self) -> LoopState: ...

    def start_loop(self) -> bool: ...

    def pause_loop(self) -> bool: ...

    def reset_loop(self) -> None: ...


def sanitize_agent(agent: AgentState) -> dict[str, Any]:
    """Transport summary of an agent; output is reduced to a line count."""

    payload = agent.config.to_dict()
    payload.update(
        {
            "status": agent.status.value,
            "pid": agent.pid,
            "startedAt": to_iso(agent.started_at),
            "error": agent.error,
            "restartCount": agent.restart_count,
            "outputLineCount": len(agent.output),
        },
    )
    return payload


def sanitize_agent_detail(agent: AgentState) -> dict[str, Any]:
    payload = sanitize_agent(agent)
    payload["recentOutput"] = list(agent.output[-DETAIL_OUTPUT_LINES:])
    return payload


def serialize_loop_state(state: LoopState) -> dict[str, Any]:
    return {
        "status": state.status.value,
        "currentPhase": state.current_phase.value,
        "cycleCount": state.cycle_count,
        "phaseStartedAt": to_iso(state.phase_started_at),
        "phaseResults": {
            phase.value: result.value for phase, result in state.phase_results.items()
        },
    }


def parse_agent_request(body: bytes | None) -> AgentConfig:
    """Validate a POST /api/agents body into an ``AgentConfig``."""

    try:
        payload = json.loads(body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Invalid JSON body") from error
    if not isinstance(payload, dict):
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Invalid JSON body")

    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Missing required field: name")

    agent_id = payload.get("id") or f"api-{uuid4().hex[:12]}"
    if not isinstance(agent_id, str):
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Field id must be a string")
    try:
        role = AgentRole(payload.get("role") or AgentRole.CUSTOM.value)
    except ValueError as error:
        raise ApiRequestError(
            HTTPStatus.BAD_REQUEST,
            f"Invalid role: {payload.get('role')!r}",
        ) from error
    try:
        agent_type = AgentType(payload.get("type") or AgentType.CUSTOM.value)
    except ValueError as error:
        raise ApiRequestError(
            HTTPStatus.BAD_REQUEST,
            f"Invalid type: {payload.get('type')!r}",
        ) from error
    command = payload.get("command") or ""
    if not isinstance(command, str):
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Field command must be a string")
    args = payload.get("args") or []
    if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
        raise ApiRequestError(HTTPStatus.BAD_REQUEST, "Field args must be a list of strings")

    return AgentConfig(
        id=agent_id,
        name=name,
        type=agent_type,
        role=role,
        command=command,
        args=tuple(args),
    )


def route_request(
    bridge: ApiBridge,
    method: str,
    path: str,
    body: bytes | None = None,
) -> ApiResponse:
    """Dispatch one request. Never raises: failures become error responses."""

    try:
        status, payload = _dispatch(bridge, method.upper(), path, body)
    except ApiRequestError as error:
        return ApiResponse(error.status, {"error": error.message})
    except Exception as error:
        logger.exception("API handler failed: %s %s", method, path)
        return ApiResponse(
            HTTPStatus.INTERNAL_SERVER_ERROR,
            {"error": f"Internal server error: {error}"},
        )
    return ApiResponse(status, payload)


def _dispatch(
    bridge: ApiBridge,
    method: str,
    path: str,
    body: bytes | None,
) -> tuple[int, Any]:
    segments = [urllib_parse.unquote(part) for part in path.strip("/").split("/") if part]
    if not segments or segments[0] != API_PREFIX.strip("/"):
        raise ApiRequestError(HTTPStatus.NOT_FOUND, "Not found")
    route = segments[1:]

    if route == ["status"] and method == "GET":
        return HTTPStatus.OK, bridge.get_status()

    if route == ["agents"]:
        if method == "GET":
            return HTTPStatus.OK, [sanitize_agent(agent) for agent in bridge.list_agents()]
        if method == "POST":
            config = parse_agent_request(body)
            try:
                created = bridge.add_agent(config)
            except DuplicateAgentError as error:
                raise ApiRequestError(HTTPStatus.CONFLICT, str(error)) from error
            return HTTPStatus.CREATED, created.to_dict()

    if len(route) == 2 and route[0] == "agents":
        agent_id = route[1]
        if method == "GET":
            agent = bridge.get_agent(agent_id)
            if agent is None:
                raise ApiRequestError(HTTPStatus.NOT_FOUND, f"Agent not found: {agent_id}")
            return HTTPStatus.OK, sanitize_agent_detail(agent)
        if method == "DELETE":
            if not bridge.remove_agent(agent_id):
                raise ApiRequestError(HTTPStatus.NOT_FOUND, f"Agent not found: {agent_id}")
            return HTTPStatus.OK, {"removed": agent_id}

    if route == ["loop"] and method == "GET":
        return HTTPStatus.OK, serialize_loop_state(bridge.get_loop_state())

    if len(route) == 2 and route[0] == "loop" and method == "POST" and route[1] in _LOOP_ACTIONS:
        action = route[1]
        if action == "start":
            bridge.start_loop()
        elif action == "pause":
            bridge.pause_loop()
        else:
            bridge.reset_loop()
        return HTTPStatus.OK, {"action": _LOOP_ACTIONS[action]}

    raise ApiRequestError(HTTPStatus.NOT_FOUND, "Not found")


class RequestCounter:
    """Thread-safe count of handled requests."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


def make_api_handler(
    bridge: ApiBridge,
    counter: RequestCounter,
) -> type[BaseHTTPRequestHandler]:
    class ApiHandler(BaseHTTPRequestHandler):
        _bridge = bridge
        _counter = counter

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
            return

        def _send_json(self, status: int, payload: Any) -> None:
            data = (json.dumps(payload) + "\n").encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def _read_body(self) -> bytes:
            raw_length = self.headers.get("Content-Length") or "0"
            try:
                length = int(raw_length)
            except ValueError as error:
                raise ApiRequestError(
                    HTTPStatus.BAD_REQUEST,
                    f"Invalid Content-Length: {raw_length}",
                ) from error
            if length <= 0:
                return b""
            return self.rfile.read(length)

        def _handle(self) -> None:
            number = self._counter.increment()
            path = urllib_parse.urlparse(self.path).path
            logger.debug("%s %s (request #%d)", self.command, path, number)
            try:
                body = self._read_body() if self.command in {"POST", "PUT", "PATCH"} else None
            except ApiRequestError as error:
                response = ApiResponse(error.status, {"error": error.message})
            else:
                response = route_request(self._bridge, self.command, path, body)
            self._send_json(response.status, response.payload)

        def do_GET(self) -> None:  # noqa: N802
            self._handle()

        def do_POST(self) -> None:  # noqa: N802
            self._handle()

        def do_DELETE(self) -> None:  # noqa: N802
            self._handle()

        def do_PUT(self) -> None:  # noqa: N802
            self._handle()

        def do_PATCH(self) -> None:  # noqa: N802
            self._handle()

    return ApiHandler


class ApiServer:
    """HTTP API bound to a loopback address, served from a background thread."""

    def __init__(
        self,
        bridge: ApiBridge,
        *,
        host: str = DEFAULT_API_HOST,
        port: int = DEFAULT_API_PORT,
    ) -> None:
        self.bridge = bridge
        self.host = host
        self.requested_port = port
        self._counter = RequestCounter()
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._server is None:
            return self.requested_port
        return int(self._server.server_port)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def request_count(self) -> int:
        return self._counter.value

    def start(self) -> ApiServer:
        if self._server is not None:
            return self
        handler = make_api_handler(self.bridge, self._counter)
        self._server = ThreadingHTTPServer((self.host, int(self.requested_port)), handler)
        self._server.daemon_threads = True
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="quad-api",
            daemon=True,
        )
        self._thread.start()
        logger.info("API server listening on %s%s", self.url, API_PREFIX)
        return self

    def close(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("API server closed")

    def __enter__(self) -> ApiServer:
        return self.start()

    def __exit__(self, *_: object) -> None:
        self.close()
