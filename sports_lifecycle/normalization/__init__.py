"""Status normalization for provider event feeds."""

from .events import normalize_event
from .status import (
    StatusClassification,
    StatusExtras,
    classify_status,
    determine_winner,
    is_terminal,
    needs_settlement,
    normalize_status,
)

__all__ = [
    "StatusClassification",
    "StatusExtras",
    "classify_status",
    "determine_winner",
    "is_terminal",
    "needs_settlement",
    "normalize_event",
    "normalize_status",
]
