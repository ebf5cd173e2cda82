"""Shared test fixtures."""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import pytest

from quad.engine.models import AgentConfig, AgentRole


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout elapses."""
    return _wait_until


@pytest.fixture()
def make_config() -> Callable[..., AgentConfig]:
    def _make(
        agent_id: str,
        role: AgentRole = AgentRole.CUSTOM,
        command: str = "true",
    ) -> AgentConfig:
        return AgentConfig(id=agent_id, name=agent_id.title(), role=role, command=command)

    return _make


@pytest.fixture()
def job_file_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated job file; also exported as ``QUAD_JOB_FILE``."""
    path = tmp_path / "quad" / "jobs.json"
    monkeypatch.setenv("QUAD_JOB_FILE", str(path))
    return path
