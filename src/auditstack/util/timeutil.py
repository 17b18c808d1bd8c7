from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(value: datetime) -> str:
    """Format as ISO 8601 with a ``Z`` suffix."""
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def utc_timestamp(value: datetime | None = None) -> str:
    """Return UTC time formatted as YYYYMMDD_HHMMSS."""
    return (value or utc_now()).astimezone(timezone.utc).strftime("%Y%m%d_%H%M%S")
