"""Runtime configuration for supervisor, job bridge and API server."""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_JOB_FILE_PATH = Path.home() / ".quad" / "jobs.json"
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 4444


@dataclass(slots=True)
class SupervisorSettings:
    """Per-agent process supervision settings."""

    output_limit: int = 20
    auto_restart: bool = False
    max_restarts: int = 3
    restart_backoff_seconds: float = 3.0
    terminate_grace_seconds: float = 2.0


@dataclass(slots=True)
class BridgeSettings:
    """Job-file bridge settings."""

    job_file_path: Path = DEFAULT_JOB_FILE_PATH
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class ApiSettings:
    """HTTP API settings. The server only ever binds loopback."""

    host: str = DEFAULT_API_HOST
    port: int = DEFAULT_API_PORT

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        job_file_raw = os.getenv("QUAD_JOB_FILE", "").strip()
        return cls(
            supervisor=SupervisorSettings(
                output_limit=_env_int("QUAD_OUTPUT_LIMIT", 20),
                auto_restart=_env_bool("QUAD_AUTO_RESTART", default=False),
                max_restarts=_env_int("QUAD_MAX_RESTARTS", 3),
                restart_backoff_seconds=_env_float("QUAD_RESTART_BACKOFF_SECONDS", 3.0),
                terminate_grace_seconds=_env_float("QUAD_TERMINATE_GRACE_SECONDS", 2.0),
            ),
            bridge=BridgeSettings(
                job_file_path=(
                    Path(job_file_raw).expanduser() if job_file_raw else DEFAULT_JOB_FILE_PATH
                ),
                poll_interval_seconds=_env_float("QUAD_JOB_POLL_INTERVAL_SECONDS", 1.0),
            ),
            api=ApiSettings(port=_env_int("QUAD_API_PORT", DEFAULT_API_PORT)),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.supervisor.output_limit < 1:
            raise ValueError("QUAD_OUTPUT_LIMIT must be >= 1.")
        if self.supervisor.max_restarts < 0:
            raise ValueError("QUAD_MAX_RESTARTS must be >= 0.")
        if self.supervisor.restart_backoff_seconds < 0:
            raise ValueError("QUAD_RESTART_BACKOFF_SECONDS must be >= 0.")
        if self.supervisor.terminate_grace_seconds <= 0:
            raise ValueError("QUAD_TERMINATE_GRACE_SECONDS must be > 0.")
        if self.bridge.poll_interval_seconds <= 0:
            raise ValueError("QUAD_JOB_POLL_INTERVAL_SECONDS must be > 0.")
        if not 0 <= self.api.port <= 65535:
            raise ValueError("QUAD_API_PORT must be between 0 and 65535.")
        if not _is_loopback(self.api.host):
            raise ValueError(f"API host must be a loopback address: {self.api.host!r}")


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
