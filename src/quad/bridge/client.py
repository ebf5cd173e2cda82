"""HTTP client for a running quad instance."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from quad.config import DEFAULT_API_HOST, DEFAULT_API_PORT

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiClientError(RuntimeError):
    """Transport failure or non-2xx response from the API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuadApiClient:
    """httpx wrapper over the ``/api`` routes."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        port: int = DEFAULT_API_PORT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or f"http://{DEFAULT_API_HOST}:{port}"
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    def status(self) -> dict[str, Any]:
        return self._request("GET", "/api/status")

    def agents(self) -> list[dict[str, Any]]:
        return self._request("GET", "/api/agents")

    def agent(self, agent_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/agents/{agent_id}")

    def add_agent(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/api/agents", json=payload)

    def remove_agent(self, agent_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/api/agents/{agent_id}")

    def loop(self) -> dict[str, Any]:
        return self._request("GET", "/api/loop")

    def loop_action(self, action: str) -> dict[str, Any]:
        return self._request("POST", f"/api/loop/{action}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> QuadApiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.debug("Request %s %s failed: %s", method, path, exc)
            raise ApiClientError(f"Cannot reach quad API at {self.base_url}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not response.is_success:
            message = payload.get("error") if isinstance(payload, dict) else None
            raise ApiClientError(
                f"HTTP {response.status_code}: {message or response.text.strip()}",
                status_code=response.status_code,
            )
        return payload
