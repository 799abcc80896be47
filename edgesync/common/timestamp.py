"""
Timestamp Utilities

Readings arrive with timestamps as datetimes, ISO strings or epoch
numbers depending on the protocol driver. Everything is normalized to
timezone-aware UTC datetimes before validation and storage.
"""

import math
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """
    Parse a reading timestamp into an aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC), ISO 8601 strings
    (including a trailing "Z") and epoch seconds or milliseconds.

    Returns:
        Aware datetime, or None if the value is not a valid date
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            if not math.isfinite(value):
                return None
            seconds = value / 1000 if abs(value) > 1e11 else value
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """ISO string for JSON payloads and status reports."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
