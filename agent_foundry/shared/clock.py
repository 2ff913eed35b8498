"""UTC timestamp helpers for lease expiry and terminal timestamps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

# Millisecond precision matches SQLite's strftime('%Y-%m-%dT%H:%M:%fZ'), so
# values written by the store and by Python compare correctly as text.
_SECONDS_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render an aware datetime as ISO-8601 UTC with millisecond precision."""

    if value.tzinfo is None:
        raise ValueError("naive_datetime")
    value = value.astimezone(timezone.utc)
    return f"{value.strftime(_SECONDS_FORMAT)}.{value.microsecond // 1000:03d}Z"


def from_iso(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_duration(value: timedelta | int | float) -> timedelta:
    duration = value if isinstance(value, timedelta) else timedelta(seconds=float(value))
    if duration.total_seconds() <= 0:
        raise ValueError("lease_duration_must_be_positive")
    return duration
