"""Status normalization: provider status strings to the canonical StatusNorm.

Classification is pure and total. Unknown input falls back to SCHEDULED
with ``warning=True`` so callers can surface it; nothing here raises.

Priority (first match wins):
    1. canceled token or is_canceled flag            → CANCELED
    2. postponed token (positive scores → LIVE)       → POSTPONED
    3. final token or is_over flag                    → FINAL
    4. live token or is_in_progress flag              → LIVE
    5. scheduled token                                → SCHEDULED
    6. period-code pattern                            → LIVE
    7. keyword (cancel, postpone, final, live)        → matching status
    8. start in the past with a non-zero score        → LIVE
    9. default                                        → SCHEDULED (warning)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..logging import logger
from ..models.enums import StatusNorm, WinnerSide
from ..utils.datetime_utils import ensure_utc, now_utc
from .status_tables import get_status_table

FLAG_POSTPONED_WITH_SCORES = "postponed_with_scores"
FLAG_SCORE_SALVAGE = "score_salvage"
FLAG_UNKNOWN_STATUS = "unknown_status"
FLAG_MISSING_STATUS = "missing_status"

TERMINAL_STATUSES = frozenset({StatusNorm.FINAL, StatusNorm.CANCELED, StatusNorm.POSTPONED})
SETTLEMENT_STATUSES = frozenset({StatusNorm.FINAL, StatusNorm.CANCELED})

# Keyword fallback in priority order
_KEYWORDS: tuple[tuple[StatusNorm, tuple[str, ...]], ...] = (
    (StatusNorm.CANCELED, ("cancel", "abandon", "void")),
    (StatusNorm.POSTPONED, ("postpon", "delay", "suspend")),
    (StatusNorm.FINAL, ("final", "ended", "finished", "complete")),
    (StatusNorm.LIVE, ("progress", "live", "playing", "half", "period", "quarter", "overtime")),
)


@dataclass(frozen=True)
class StatusExtras:
    """Optional provider context used by the flag and heuristic rules."""

    home_score: int | None = None
    away_score: int | None = None
    is_over: bool | None = None
    is_canceled: bool | None = None
    is_in_progress: bool | None = None
    start_time: datetime | None = None


@dataclass(frozen=True)
class StatusClassification:
    status: StatusNorm
    rule: str
    warning: bool = False
    flags: tuple[str, ...] = field(default_factory=tuple)


def _both_scores(extras: StatusExtras) -> bool:
    return extras.home_score is not None and extras.away_score is not None


def _any_positive_score(extras: StatusExtras) -> bool:
    return bool(extras.home_score) or bool(extras.away_score)


def classify_status(
    provider: str | None,
    raw_status: str | None,
    extras: StatusExtras | None = None,
    now: datetime | None = None,
) -> StatusClassification:
    """Classify a raw status and report which rule decided it."""
    extras = extras or StatusExtras()
    table = get_status_table(provider)
    token = (raw_status or "").strip().lower()

    if token in table.canceled or extras.is_canceled:
        return StatusClassification(StatusNorm.CANCELED, "canceled")

    if token in table.postponed:
        if _both_scores(extras) and _any_positive_score(extras):
            return StatusClassification(
                StatusNorm.LIVE,
                "postponed_with_scores",
                warning=True,
                flags=(FLAG_POSTPONED_WITH_SCORES,),
            )
        return StatusClassification(StatusNorm.POSTPONED, "postponed")

    if token in table.final or extras.is_over:
        return StatusClassification(StatusNorm.FINAL, "final")

    if token in table.live or extras.is_in_progress:
        return StatusClassification(StatusNorm.LIVE, "live")

    if token in table.scheduled:
        return StatusClassification(StatusNorm.SCHEDULED, "scheduled")

    if token:
        if table.period_pattern.match(token):
            return StatusClassification(StatusNorm.LIVE, "period_pattern")

        for status, keywords in _KEYWORDS:
            if any(keyword in token for keyword in keywords):
                return StatusClassification(status, "keyword")

    if extras.start_time is not None and _any_positive_score(extras):
        current = now or now_utc()
        if ensure_utc(extras.start_time) < current:
            return StatusClassification(
                StatusNorm.LIVE,
                "score_salvage",
                warning=True,
                flags=(FLAG_SCORE_SALVAGE,),
            )

    flag = FLAG_UNKNOWN_STATUS if token else FLAG_MISSING_STATUS
    return StatusClassification(StatusNorm.SCHEDULED, "default", warning=True, flags=(flag,))


def normalize_status(
    provider: str | None,
    raw_status: str | None,
    extras: StatusExtras | None = None,
    now: datetime | None = None,
) -> StatusNorm:
    """Map a provider status to StatusNorm, logging heuristic decisions."""
    result = classify_status(provider, raw_status, extras, now=now)
    if result.warning:
        logger.warning(
            "status_normalization_flagged",
            provider=provider,
            raw_status=raw_status,
            status=result.status.value,
            rule=result.rule,
            flags=list(result.flags),
        )
    return result.status


def determine_winner(home_score: int | None, away_score: int | None) -> WinnerSide | None:
    """Winner side from final scores; None when either score is missing."""
    if home_score is None or away_score is None:
        return None
    if home_score > away_score:
        return WinnerSide.HOME
    if away_score > home_score:
        return WinnerSide.AWAY
    return WinnerSide.DRAW


def is_terminal(status: StatusNorm | str | None) -> bool:
    """FINAL, CANCELED and POSTPONED end routine syncing absent a correction."""
    if status is None:
        return False
    return StatusNorm(status) in TERMINAL_STATUSES


def needs_settlement(status: StatusNorm | str | None) -> bool:
    """True for statuses whose markets must be resolved (FINAL, CANCELED)."""
    if status is None:
        return False
    return StatusNorm(status) in SETTLEMENT_STATUSES
