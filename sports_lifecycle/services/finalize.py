"""FinalizeEnqueuer: queue settlement for terminal events that have none.

The queue's unique event_id plus ON CONFLICT DO NOTHING makes every
enqueue a no-op when another worker got there first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import db_models
from ..logging import logger
from ..models.enums import StatusNorm
from ..normalization.status import needs_settlement
from ..persistence.settlement_queue import enqueue_settlement, find_unqueued_settleable_events


@dataclass
class FinalizeResult:
    total_finalized: int = 0
    total_enqueued: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_finalized": self.total_finalized,
            "total_enqueued": self.total_enqueued,
            "errors": list(self.errors),
        }


def enqueue_event_settlement(session: Session, event: db_models.SportsEvent) -> bool:
    """Queue one event if it needs settlement. True only when a row was inserted."""
    if not needs_settlement(event.status_norm):
        return False
    if event.status_norm == StatusNorm.FINAL.value and not event.winner_side:
        logger.warning(
            "finalize_missing_winner",
            event_id=event.id,
            league=event.league,
            external_id=event.external_id,
        )
        return False
    return enqueue_settlement(session, event)


def enqueue_finalized(session: Session, max_games: int | None = None) -> FinalizeResult:
    """Scan terminal, settlement-needed events without a queue row and enqueue them."""
    limit = max_games or settings.lifecycle_config.finalize_max_games
    result = FinalizeResult()

    events = find_unqueued_settleable_events(session, limit)
    result.total_finalized = len(events)
    if not events:
        logger.debug("finalize_nothing_to_enqueue")
        return result

    for event in events:
        try:
            with session.begin_nested():
                if enqueue_event_settlement(session, event):
                    result.total_enqueued += 1
        except SQLAlchemyError as exc:
            result.errors.append(f"event {event.id}: {exc}")
            logger.warning("finalize_enqueue_error", event_id=event.id, error=str(exc))

    session.commit()
    logger.info(
        "finalize_complete",
        total_finalized=result.total_finalized,
        total_enqueued=result.total_enqueued,
        errors=len(result.errors),
        limit=limit,
    )
    return result
