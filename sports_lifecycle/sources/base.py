"""Event source contract shared by every upstream provider client."""

from __future__ import annotations

from datetime import date
from typing import Protocol

from ..models.schemas import RawEvent


class EventSourceError(Exception):
    """Upstream provider unreachable or returned an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(EventSourceError):
    """Provider answered 429 or reported an exhausted request quota."""


class EventSource(Protocol):
    """Fetch events for one league at a time.

    Implementations raise EventSourceError for transient failures; callers
    catch it per call so one league never aborts another.
    """

    provider: str

    def fetch_events(self, league: str, day: date) -> list[RawEvent]:
        ...

    def fetch_live_events(self, league: str) -> list[RawEvent]:
        ...
