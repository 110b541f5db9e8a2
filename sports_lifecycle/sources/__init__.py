"""Upstream event sources."""

from .base import EventSource, EventSourceError, RateLimitError

__all__ = ["EventSource", "EventSourceError", "RateLimitError"]
