"""SettlementProcessor: drain the settlement queue.

Per item:
1. claim (atomic QUEUED → PROCESSING) and commit, so the claim is
   visible before any external call
2. short-circuit to SETTLED if the event already carries settled_at
3. call the executor
4. success → SETTLED and event.settled_at; failure → backoff or FAILED

A single item's failure never stops the batch. Items whose claim is lost
mid-flight (released as stale by the health check) are left to the next
claimer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import db_models
from ..logging import logger
from ..models.enums import SettlementStatus
from ..persistence import settlement_queue as queue
from ..utils.datetime_utils import now_utc
from ..utils.retry import RetryPolicy, settlement_retry_policy
from .settlement_executor import SettlementExecutor, SettlementOutcome, SettlementRequest


@dataclass(frozen=True)
class ProcessOneResult:
    item_id: int
    success: bool
    status: SettlementStatus | None
    error: str | None = None
    executor_called: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "success": self.success,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "executor_called": self.executor_called,
        }


@dataclass
class ProcessAllResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0
    parked: int = 0
    errors: list[str] = field(default_factory=list)
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "requeued": self.requeued,
            "parked": self.parked,
            "errors": list(self.errors),
            "items": list(self.items),
        }


def _build_request(
    item: db_models.SettlementQueueItem, event: db_models.SportsEvent
) -> SettlementRequest:
    return SettlementRequest(
        item_id=item.id,
        event_id=item.event_id,
        league=item.league,
        provider=item.provider,
        external_id=item.external_id,
        outcome=item.outcome or queue.settlement_outcome(event),
        home_score=event.home_score,
        away_score=event.away_score,
    )


class SettlementProcessor:
    """Claims queue items and settles them through an executor."""

    def __init__(
        self,
        executor: SettlementExecutor,
        worker_id: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.executor = executor
        self.worker_id = worker_id or settings.worker_id
        self.policy = policy or settlement_retry_policy()

    def lock_next_item(
        self, session: Session, now: datetime | None = None
    ) -> db_models.SettlementQueueItem | None:
        """Claim the oldest due item and commit the claim. None when idle."""
        item = queue.claim_next_item(session, self.worker_id, now=now)
        session.commit()
        if item is not None:
            logger.info(
                "settlement_item_claimed",
                item_id=item.id,
                event_id=item.event_id,
                attempts=item.attempts,
                worker=self.worker_id,
            )
        return item

    def _record_failure(
        self, session: Session, item: db_models.SettlementQueueItem, error: str
    ) -> ProcessOneResult:
        record = queue.mark_item_failed(session, item, self.worker_id, error, self.policy)
        session.commit()
        if record is None:
            logger.warning("settlement_claim_lost", item_id=item.id, worker=self.worker_id)
            return ProcessOneResult(item_id=item.id, success=False, status=None, error=error)

        log = logger.error if record.status == SettlementStatus.FAILED else logger.warning
        log(
            "settlement_item_failed",
            item_id=item.id,
            event_id=item.event_id,
            attempts=record.attempts,
            status=record.status.value,
            next_attempt_at=record.next_attempt_at.isoformat(),
            error=error,
        )
        return ProcessOneResult(item_id=item.id, success=False, status=record.status, error=error)

    def process_one(
        self, session: Session, item: db_models.SettlementQueueItem
    ) -> ProcessOneResult:
        """Settle one claimed item and record the outcome."""
        event = session.get(db_models.SportsEvent, item.event_id)
        if event is None:
            return self._record_failure(session, item, f"event {item.event_id} not found")

        if event.settled_at is not None:
            settled = queue.mark_item_settled(session, item.id, self.worker_id)
            session.commit()
            logger.info(
                "settlement_already_applied",
                item_id=item.id,
                event_id=event.id,
                settled_at=event.settled_at.isoformat(),
            )
            return ProcessOneResult(
                item_id=item.id,
                success=True,
                status=SettlementStatus.SETTLED if settled else None,
                executor_called=False,
            )

        request = _build_request(item, event)
        try:
            outcome = self.executor.settle(request)
        except Exception as exc:
            logger.exception("settlement_executor_error", item_id=item.id, error=str(exc))
            outcome = SettlementOutcome(success=False, error=str(exc) or exc.__class__.__name__)

        if not outcome.success:
            return self._record_failure(session, item, outcome.error or "settlement failed")

        now = now_utc()
        settled = queue.mark_item_settled(session, item.id, self.worker_id, now=now)
        if event.settled_at is None:
            event.settled_at = now
        session.commit()
        if not settled:
            logger.warning("settlement_claim_lost_after_success", item_id=item.id, event_id=event.id)
        logger.info(
            "settlement_item_settled",
            item_id=item.id,
            event_id=event.id,
            league=item.league,
            outcome=request.outcome,
        )
        return ProcessOneResult(
            item_id=item.id,
            success=True,
            status=SettlementStatus.SETTLED if settled else None,
        )

    def process_all(self, session: Session, max_items: int | None = None) -> ProcessAllResult:
        """Claim and settle items until none are due or *max_items* were attempted."""
        limit = max_items or settings.lifecycle_config.settle_max_items
        result = ProcessAllResult()

        while result.attempted < limit:
            item = self.lock_next_item(session)
            if item is None:
                break
            result.attempted += 1
            try:
                outcome = self.process_one(session, item)
            except SQLAlchemyError as exc:
                # Item stays PROCESSING; the health check releases it once stale
                session.rollback()
                result.failed += 1
                result.errors.append(f"item {item.id}: {exc}")
                logger.warning("settlement_item_store_error", item_id=item.id, error=str(exc))
                continue

            result.items.append(outcome.to_dict())
            if outcome.success:
                result.succeeded += 1
                continue
            result.failed += 1
            if outcome.error:
                result.errors.append(f"item {item.id}: {outcome.error}")
            if outcome.status == SettlementStatus.QUEUED:
                result.requeued += 1
            elif outcome.status == SettlementStatus.FAILED:
                result.parked += 1

        logger.info(
            "settlement_batch_complete",
            attempted=result.attempted,
            succeeded=result.succeeded,
            failed=result.failed,
            requeued=result.requeued,
            parked=result.parked,
            limit=limit,
        )
        return result


def reset_failed_item(session: Session, item_id: int) -> bool:
    """Operator retry: FAILED → QUEUED (attempts kept). False if not FAILED."""
    reset = queue.reset_failed_item(session, item_id)
    session.commit()
    logger.info("settlement_item_reset", item_id=item_id, reset=reset)
    return reset


def retry_failed_items(session: Session, limit: int | None = None) -> int:
    """Scheduler retry: reset up to *limit* FAILED items, oldest first."""
    batch = limit or settings.lifecycle_config.failed_retry_batch_size
    reset = 0
    for item_id in queue.find_failed_item_ids(session, batch):
        if queue.reset_failed_item(session, item_id):
            reset += 1
    session.commit()
    if reset:
        logger.info("settlement_failed_items_reset", count=reset)
    return reset


def list_settlement_queue(
    session: Session,
    status: SettlementStatus | str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Newest queue items first, as plain dicts for operator output."""
    return [
        {
            "id": item.id,
            "event_id": item.event_id,
            "league": item.league,
            "external_id": item.external_id,
            "outcome": item.outcome,
            "status": item.status,
            "attempts": item.attempts,
            "next_attempt_at": item.next_attempt_at,
            "locked_by": item.locked_by,
            "last_error": item.last_error,
            "settled_at": item.settled_at,
            "created_at": item.created_at,
        }
        for item in queue.list_queue(session, status=status, limit=limit)
    ]
