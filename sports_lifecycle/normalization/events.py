"""Turn provider RawEvents into NormalizedEvents."""

from __future__ import annotations

from datetime import datetime

from ..models.enums import StatusNorm
from ..models.schemas import NormalizedEvent, RawEvent
from ..logging import logger
from .status import StatusExtras, classify_status, determine_winner


def normalize_event(raw: RawEvent, now: datetime | None = None) -> NormalizedEvent:
    """Classify the raw status and derive the winner (FINAL events only)."""
    extras = StatusExtras(
        home_score=raw.home_score,
        away_score=raw.away_score,
        is_over=raw.is_over,
        is_canceled=raw.is_canceled,
        is_in_progress=raw.is_in_progress,
        start_time=raw.starts_at,
    )
    result = classify_status(raw.provider, raw.status_raw, extras, now=now)
    if result.warning:
        logger.warning(
            "status_normalization_flagged",
            provider=raw.provider,
            league=raw.league,
            external_id=raw.external_id,
            raw_status=raw.status_raw,
            status=result.status.value,
            rule=result.rule,
            flags=list(result.flags),
        )

    winner = None
    if result.status == StatusNorm.FINAL:
        winner = determine_winner(raw.home_score, raw.away_score)

    return NormalizedEvent(
        **raw.model_dump(),
        status_norm=result.status,
        winner_side=winner,
        status_rule=result.rule,
        status_flags=list(result.flags),
    )
