from __future__ import annotations

import json
import socket
import threading
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from quad import __version__
from quad.bridge.api_server import ApiServer
from quad.config import SupervisorSettings
from quad.controllers import QuadCliController, RunCommand
from quad.main import quad
from quad.runtime import QuadRuntime

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands & Controllers"),
]


@pytest.fixture()
def live_port():
    runtime = QuadRuntime(settings=SupervisorSettings(terminate_grace_seconds=1.0)).start()
    server = ApiServer(runtime, port=0).start()
    yield server.port
    server.close()
    runtime.shutdown()


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_version_option() -> None:
    result = CliRunner().invoke(quad, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_job_submit_and_list(job_file_path: Path) -> None:
    runner = CliRunner()

    submitted = runner.invoke(
        quad,
        [
            "job",
            "submit",
            "--id",
            "j1",
            "--name",
            "Fix bug",
            "--command",
            "claude",
            "--role",
            "coder",
            "--agent",
            "claude",
            "--task",
            "Fix the login bug",
            "--arg=-p",
        ],
    )
    listed = runner.invoke(quad, ["job", "list"])

    assert submitted.exit_code == 0, submitted.output
    assert "Job submitted: j1 (agent job-j1)" in submitted.output
    payload = json.loads(job_file_path.read_text("utf-8"))
    assert payload["version"] == "1.0"
    assert payload["jobs"][0]["status"] == "pending"
    assert payload["jobs"][0]["task"] == "Fix the login bug"
    assert payload["jobs"][0]["args"] == ["-p"]
    assert payload["jobs"][0]["addedAt"]
    assert listed.exit_code == 0
    assert "Jobs: 1 (version 1.0)" in listed.output
    assert "j1 status=pending role=coder agent=claude name=Fix bug" in listed.output


def test_job_submit_duplicate_id_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    job_file = str(tmp_path / "jobs.json")
    args = ["job", "submit", "--id", "j1", "--name", "x", "--command", "true", "--job-file", job_file]

    assert runner.invoke(quad, args).exit_code == 0
    result = runner.invoke(quad, args)

    assert result.exit_code == 1
    assert "already exists" in result.output


def test_api_commands_against_running_instance(live_port: int) -> None:
    runner = CliRunner()
    port = ["--port", str(live_port)]

    added = runner.invoke(
        quad,
        ["add-agent", "--name", "Sleeper", "--id", "s1", "--role", "planner", "--command", "sleep 30", *port],
    )
    status = runner.invoke(quad, ["status", *port])
    agents = runner.invoke(quad, ["agents", *port])
    detail = runner.invoke(quad, ["agent", "s1", *port])
    loop = runner.invoke(quad, ["loop", "start", *port])
    removed = runner.invoke(quad, ["remove-agent", "s1", *port])

    assert added.exit_code == 0, added.output
    assert "Agent added: s1 role=planner type=custom" in added.output
    assert "Agents: 1" in status.output
    assert "s1 name=Sleeper role=planner" in agents.output
    assert "Agent: s1" in detail.output
    assert "Loop started" in loop.output
    assert "running phase=plan" in loop.output
    assert "Agent removed: s1" in removed.output


def test_unknown_agent_reports_api_error(live_port: int) -> None:
    result = CliRunner().invoke(quad, ["agent", "ghost", "--port", str(live_port)])

    assert result.exit_code == 1
    assert "Agent not found: ghost" in result.output


def test_unreachable_instance_is_a_clean_error() -> None:
    result = CliRunner().invoke(quad, ["status", "--port", str(_free_port())])

    assert result.exit_code == 1
    assert "Cannot reach quad API" in result.output


def test_run_controller_boots_and_tears_down(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUAD_TERMINATE_GRACE_SECONDS", "1")
    ready: list[str] = []
    stop = threading.Event()
    job_file = tmp_path / "jobs.json"

    lines = QuadCliController().run(
        RunCommand(port=0, job_file=job_file, demo=True, start_loop=True, max_runtime_seconds=0.5),
        on_ready=ready.extend,
        stop_event=stop,
    )

    assert ready[0] == "Agents: 3"
    assert ready[1].startswith("API: http://127.0.0.1:")
    assert ready[2] == f"Job file: {job_file}"
    assert job_file.exists()
    assert lines[0] == "Stopped (done)"
    assert lines[1].startswith("Loop: status=")


def test_job_list_reports_skipped_entries(job_file_path: Path) -> None:
    job_file_path.parent.mkdir(parents=True, exist_ok=True)
    job_file_path.write_text(json.dumps({"jobs": [{"id": "j1"}, {"id": 7}]}), "utf-8")

    result = CliRunner().invoke(quad, ["job", "list"])

    assert result.exit_code == 0
    assert "Jobs: 1 (version 1.0)" in result.output
    assert "skipped entry 1: Job entry is missing a string id" in result.output
