"""Common typed models shared across lifecycle phases."""

from .enums import JobName, OUTCOME_CANCELED, SettlementStatus, StatusNorm, WinnerSide
from .schemas import NormalizedEvent, RawEvent

__all__ = [
    "StatusNorm",
    "WinnerSide",
    "SettlementStatus",
    "JobName",
    "OUTCOME_CANCELED",
    "RawEvent",
    "NormalizedEvent",
]
