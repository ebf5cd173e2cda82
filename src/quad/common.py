"""Small shared helpers."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an optional timestamp as ISO-8601."""

    if value is None:
        return None
    return value.isoformat()
