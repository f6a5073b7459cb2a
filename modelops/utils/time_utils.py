"""Timestamp helpers for serializing lifecycle entities."""

from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an optional datetime to ISO-8601."""
    return value.isoformat() if value else None


def from_iso(value: Any) -> datetime | None:  # noqa: ANN401
    """Parse an ISO-8601 string, assuming UTC when no offset is present."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
