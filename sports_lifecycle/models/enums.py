"""Canonical enums for event status, settlement and job names."""

from __future__ import annotations

from enum import Enum


class StatusNorm(str, Enum):
    """Canonical event status.

    Happy path: SCHEDULED → LIVE → FINAL. POSTPONED and CANCELED may be
    entered from any non-final state.
    """

    SCHEDULED = "SCHEDULED"
    LIVE = "LIVE"
    FINAL = "FINAL"
    POSTPONED = "POSTPONED"
    CANCELED = "CANCELED"


class WinnerSide(str, Enum):
    HOME = "HOME"
    AWAY = "AWAY"
    DRAW = "DRAW"


class SettlementStatus(str, Enum):
    """Settlement queue item state.

    QUEUED → PROCESSING → SETTLED | QUEUED (retry) | FAILED.
    FAILED → QUEUED only via an explicit reset.
    """

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


class JobName(str, Enum):
    DISCOVER = "discover"
    SYNC = "sync"
    FINALIZE = "finalize"
    SETTLE = "settle"


# Outcome stored on a queue item: a winner side, or CANCELED for void markets
OUTCOME_CANCELED = "CANCELED"
