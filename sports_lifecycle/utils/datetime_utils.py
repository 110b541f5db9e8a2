"""
Low-level timezone and timestamp utilities.

Domain-agnostic helpers for timezone-aware UTC datetimes and day windows.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone


def now_utc() -> datetime:
    """Return the current timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime, convert an aware one to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def dates_between(start: datetime, end: datetime) -> list[date]:
    """Return every UTC calendar date touched by [start, end], oldest first."""
    first = ensure_utc(start).date()
    last = ensure_utc(end).date()
    days: list[date] = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
