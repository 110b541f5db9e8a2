"""Settlement queue persistence.

Every state change is a single statement guarded by the expected current
state (compare-and-transition), so concurrent workers never race between
a read and a write:

- enqueue: INSERT ... ON CONFLICT (event_id) DO NOTHING
- claim:   UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)
- finish:  UPDATE ... WHERE status = 'PROCESSING' AND locked_by = :worker
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from ..db import db_models
from ..logging import logger
from ..models.enums import OUTCOME_CANCELED, SettlementStatus, StatusNorm
from ..utils.datetime_utils import now_utc
from ..utils.retry import RetryPolicy

_QUEUED = SettlementStatus.QUEUED.value
_PROCESSING = SettlementStatus.PROCESSING.value
_SETTLED = SettlementStatus.SETTLED.value
_FAILED = SettlementStatus.FAILED.value

_MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class FailureRecord:
    status: SettlementStatus
    attempts: int
    next_attempt_at: datetime


def settlement_outcome(event: db_models.SportsEvent) -> str | None:
    """Outcome recorded on the queue item: winner side, or CANCELED."""
    if event.status_norm == StatusNorm.CANCELED.value:
        return OUTCOME_CANCELED
    return event.winner_side


def enqueue_settlement(
    session: Session,
    event: db_models.SportsEvent,
    now: datetime | None = None,
) -> bool:
    """Insert a QUEUED item for *event*. Returns False if one already exists."""
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    stmt = (
        insert(model)
        .values(
            event_id=event.id,
            league=event.league,
            provider=event.provider,
            external_id=event.external_id,
            outcome=settlement_outcome(event),
            status=_QUEUED,
            attempts=0,
            next_attempt_at=now,
        )
        .on_conflict_do_nothing(index_elements=[model.event_id])
        .returning(model.id)
    )
    item_id = session.execute(stmt).scalar_one_or_none()
    if item_id is None:
        logger.debug("settlement_enqueue_duplicate", event_id=event.id)
        return False
    logger.info(
        "settlement_enqueued",
        item_id=item_id,
        event_id=event.id,
        league=event.league,
        outcome=settlement_outcome(event),
    )
    return True


def _settleable_unqueued_query():
    event = db_models.SportsEvent
    item = db_models.SettlementQueueItem
    return (
        select(event)
        .outerjoin(item, item.event_id == event.id)
        .where(
            item.id.is_(None),
            event.settled_at.is_(None),
            (
                (event.status_norm == StatusNorm.CANCELED.value)
                | ((event.status_norm == StatusNorm.FINAL.value) & event.winner_side.isnot(None))
            ),
        )
    )


def find_unqueued_settleable_events(session: Session, limit: int) -> list[db_models.SportsEvent]:
    """FINAL (with a winner) or CANCELED events that have no queue row."""
    event = db_models.SportsEvent
    stmt = (
        _settleable_unqueued_query()
        .order_by(event.finalized_at.asc().nullsfirst(), event.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def count_unqueued_settleable_events(session: Session) -> int:
    subquery = _settleable_unqueued_query().subquery()
    return int(session.execute(select(func.count()).select_from(subquery)).scalar_one())


def _final_without_winner_query():
    event = db_models.SportsEvent
    return select(event).where(
        event.status_norm == StatusNorm.FINAL.value,
        event.winner_side.is_(None),
        event.settled_at.is_(None),
    )


def find_final_events_without_winner(session: Session, limit: int) -> list[db_models.SportsEvent]:
    """FINAL events still missing a score, so finalize cannot queue them."""
    event = db_models.SportsEvent
    stmt = (
        _final_without_winner_query()
        .order_by(event.finalized_at.asc().nullsfirst(), event.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def count_final_events_without_winner(session: Session) -> int:
    subquery = _final_without_winner_query().subquery()
    return int(session.execute(select(func.count()).select_from(subquery)).scalar_one())


def claim_next_item(
    session: Session,
    worker_id: str,
    now: datetime | None = None,
) -> db_models.SettlementQueueItem | None:
    """Atomically move the oldest due QUEUED item to PROCESSING.

    Rows locked by another claimer are skipped, so two workers never
    receive the same item. Returns None when nothing is eligible.
    """
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    candidate = (
        select(model.id)
        .where(model.status == _QUEUED, model.next_attempt_at <= now)
        .order_by(model.created_at.asc(), model.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .correlate(None)
        .scalar_subquery()
    )
    stmt = (
        update(model)
        .where(model.id == candidate, model.status == _QUEUED)
        .values(status=_PROCESSING, locked_by=worker_id, locked_at=now, updated_at=now)
        .returning(model)
        .execution_options(synchronize_session=False)
    )
    return session.scalars(stmt).one_or_none()


def mark_item_settled(
    session: Session,
    item_id: int,
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    """PROCESSING → SETTLED for the claim holder. False if the claim was lost."""
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    result = session.execute(
        update(model)
        .where(model.id == item_id, model.status == _PROCESSING, model.locked_by == worker_id)
        .values(
            status=_SETTLED,
            settled_at=now,
            locked_by=None,
            locked_at=None,
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_item_failed(
    session: Session,
    item: db_models.SettlementQueueItem,
    worker_id: str,
    error: str,
    policy: RetryPolicy,
    now: datetime | None = None,
) -> FailureRecord | None:
    """Record a failed attempt: back to QUEUED with backoff, or FAILED when exhausted.

    ``next_attempt_at`` never moves backwards. Returns None if the claim was
    lost (for example released as stale by the health check).
    """
    now = now or now_utc()
    attempts = (item.attempts or 0) + 1
    previous = item.next_attempt_at
    if policy.exhausted(attempts):
        status = SettlementStatus.FAILED
        next_attempt_at = max(previous, now) if previous is not None else now
    else:
        status = SettlementStatus.QUEUED
        next_attempt_at = policy.next_attempt_at(attempts, now, previous)

    model = db_models.SettlementQueueItem
    result = session.execute(
        update(model)
        .where(model.id == item.id, model.status == _PROCESSING, model.locked_by == worker_id)
        .values(
            status=status.value,
            attempts=attempts,
            next_attempt_at=next_attempt_at,
            last_error=error[:_MAX_ERROR_LENGTH],
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return FailureRecord(status=status, attempts=attempts, next_attempt_at=next_attempt_at)


def reset_failed_item(session: Session, item_id: int, now: datetime | None = None) -> bool:
    """FAILED → QUEUED, eligible now. Attempts and last_error are preserved."""
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    result = session.execute(
        update(model)
        .where(model.id == item_id, model.status == _FAILED)
        .values(
            status=_QUEUED,
            next_attempt_at=func.greatest(model.next_attempt_at, now),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def find_failed_item_ids(session: Session, limit: int) -> list[int]:
    model = db_models.SettlementQueueItem
    stmt = (
        select(model.id)
        .where(model.status == _FAILED)
        .order_by(model.updated_at.asc(), model.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def release_stale_processing(
    session: Session,
    older_than: datetime,
    now: datetime | None = None,
) -> list[int]:
    """PROCESSING items claimed before *older_than* go back to QUEUED.

    A stall is not a failed attempt, so attempts are left untouched.
    """
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    stmt = (
        update(model)
        .where(model.status == _PROCESSING, model.locked_at < older_than)
        .values(status=_QUEUED, locked_by=None, locked_at=None, updated_at=now)
        .returning(model.id)
        .execution_options(synchronize_session=False)
    )
    return list(session.execute(stmt).scalars().all())


def get_queue_stats(session: Session, now: datetime | None = None) -> dict[str, Any]:
    """Counts per status plus due and oldest-queued diagnostics."""
    now = now or now_utc()
    model = db_models.SettlementQueueItem
    counts = {status.value: 0 for status in SettlementStatus}
    for status, count in session.execute(
        select(model.status, func.count()).group_by(model.status)
    ).all():
        counts[status] = int(count)

    due_now = session.execute(
        select(func.count())
        .select_from(model)
        .where(model.status == _QUEUED, model.next_attempt_at <= now)
    ).scalar_one()
    oldest_queued = session.execute(
        select(func.min(model.created_at)).where(model.status == _QUEUED)
    ).scalar_one_or_none()

    return {
        "by_status": counts,
        "total": sum(counts.values()),
        "due_now": int(due_now),
        "oldest_queued_at": oldest_queued.isoformat() if oldest_queued else None,
        "oldest_queued_age_seconds": (
            (now - oldest_queued).total_seconds() if oldest_queued else None
        ),
    }


def list_queue(
    session: Session,
    status: SettlementStatus | str | None = None,
    limit: int = 50,
) -> list[db_models.SettlementQueueItem]:
    model = db_models.SettlementQueueItem
    stmt = select(model)
    if status is not None:
        stmt = stmt.where(model.status == SettlementStatus(status).value)
    stmt = stmt.order_by(model.created_at.desc(), model.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())
