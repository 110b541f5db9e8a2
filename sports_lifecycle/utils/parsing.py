"""
Generic, format-agnostic parsing utilities for provider payloads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def parse_int(value: str | int | float | None) -> int | None:
    """Parse a value to an integer, handling common edge cases.

    Accepts strings, ints, floats, or None. Returns None for empty strings or "-".
    """
    if value in (None, "", "-"):
        return None
    if isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return None


def parse_iso_datetime(value: str) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_event_datetime(value: Any) -> datetime | None:
    """Parse a provider date block into an aware UTC datetime.

    Tried in order: ``{"timestamp": epoch_seconds}``, ``{"date", "time"}``
    pairs, a bare ISO string, and ``{"date": iso_string}``.
    """
    if not value:
        return None
    if isinstance(value, str):
        return parse_iso_datetime(value)
    if not isinstance(value, dict):
        return None

    timestamp = value.get("timestamp")
    if timestamp is not None:
        try:
            return datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError, OSError):
            pass

    day = value.get("date")
    clock = value.get("time")
    if isinstance(day, str) and isinstance(clock, str) and "T" not in day:
        parsed = parse_iso_datetime(f"{day}T{clock}")
        if parsed is not None:
            return parsed

    if isinstance(day, str):
        return parse_iso_datetime(day)
    return None
