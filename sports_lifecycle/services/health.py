"""HealthMonitor: detect and repair lifecycle drift.

Checks are read-only. Each reports a count, a severity from fixed
thresholds and (optionally) the offending rows. Two repairs exist:

- release PROCESSING items whose claim went stale (crashed worker)
- enqueue terminal events that never got a settlement row

FINAL events that arrived without both scores have no winner and cannot
be queued; they are reported as ``final_missing_winner`` and alongside
the unqueued events in ``orphaned_events``.

Expired job lock rows are listed as ``stale_locks``; the next acquire of
that job deletes them anyway, the repair pass just does it eagerly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import db_models
from ..logging import logger
from ..models.enums import SettlementStatus, StatusNorm
from ..persistence import job_locks as lock_store
from ..persistence import settlement_queue as queue
from ..utils.datetime_utils import now_utc
from .finalize import enqueue_event_settlement

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

STUCK_LIVE_HOURS = 6
STUCK_SCHEDULED_HOURS = 8
QUEUED_TOO_LONG_MINUTES = 30
FAILED_MANY_ATTEMPTS = 5

# (warning, critical) issue counts per check
THRESHOLDS: dict[str, tuple[int, int]] = {
    "stuck_live": (1, 5),
    "stuck_scheduled": (5, 20),
    "final_not_queued": (1, 3),
    "final_missing_winner": (1, 5),
    "queued_too_long": (3, 10),
    "failed_many": (2, 5),
    "processing_stale": (1, 3),
    "expired_job_locks": (1, 3),
}

_ITEM_LIMIT = 50


@dataclass
class HealthCheck:
    name: str
    count: int
    status: str
    description: str
    items: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "count": self.count,
            "status": self.status,
            "description": self.description,
        }
        if self.items is not None:
            data["items"] = self.items
        return data


@dataclass
class HealthReport:
    status: str
    checked_at: datetime
    checks: dict[str, HealthCheck] = field(default_factory=dict)
    stale_locks: list[dict[str, Any]] = field(default_factory=list)
    orphaned_events: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def summary(self) -> dict[str, Any]:
        critical = sum(1 for c in self.checks.values() if c.status == CRITICAL)
        warning = sum(1 for c in self.checks.values() if c.status == WARNING)
        return {
            "total_issues": sum(c.count for c in self.checks.values()),
            "critical_count": critical,
            "warning_count": warning,
            "checked_at": self.checked_at.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "stale_locks": list(self.stale_locks),
            "orphaned_events": list(self.orphaned_events),
            "stats": dict(self.stats),
        }


def severity(name: str, count: int) -> str:
    warning_at, critical_at = THRESHOLDS[name]
    if count >= critical_at:
        return CRITICAL
    if count >= warning_at:
        return WARNING
    return HEALTHY


def overall_status(checks: dict[str, HealthCheck]) -> str:
    statuses = {check.status for check in checks.values()}
    if CRITICAL in statuses:
        return CRITICAL
    if WARNING in statuses:
        return WARNING
    return HEALTHY


def _event_item(event: db_models.SportsEvent) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "league": event.league,
        "external_id": event.external_id,
        "status_norm": event.status_norm,
        "status_raw": event.status_raw,
        "starts_at": event.starts_at.isoformat() if event.starts_at else None,
        "home_team": event.home_team,
        "away_team": event.away_team,
    }


def _queue_item(item: db_models.SettlementQueueItem) -> dict[str, Any]:
    return {
        "item_id": item.id,
        "event_id": item.event_id,
        "league": item.league,
        "status": item.status,
        "attempts": item.attempts,
        "next_attempt_at": item.next_attempt_at.isoformat() if item.next_attempt_at else None,
        "locked_by": item.locked_by,
        "locked_at": item.locked_at.isoformat() if item.locked_at else None,
        "last_error": item.last_error,
    }


def _count(session: Session, model: Any, *criteria: Any) -> int:
    stmt = select(func.count()).select_from(model).where(*criteria)
    return int(session.execute(stmt).scalar_one())


def _rows(session: Session, model: Any, order_by: Any, *criteria: Any) -> list[Any]:
    stmt = select(model).where(*criteria).order_by(order_by).limit(_ITEM_LIMIT)
    return list(session.execute(stmt).scalars().all())


def _stuck_events_check(
    session: Session,
    name: str,
    status: StatusNorm,
    hours: int,
    now: datetime,
    include_items: bool,
) -> HealthCheck:
    event = db_models.SportsEvent
    criteria = (
        event.status_norm == status.value,
        event.starts_at.isnot(None),
        event.starts_at < now - timedelta(hours=hours),
    )
    count = _count(session, event, *criteria)
    items = None
    if include_items:
        items = [_event_item(e) for e in _rows(session, event, event.starts_at.asc(), *criteria)]
    return HealthCheck(
        name=name,
        count=count,
        status=severity(name, count),
        description=f"{status.value} events that started more than {hours}h ago",
        items=items,
    )


def _queue_check(
    session: Session,
    name: str,
    description: str,
    include_items: bool,
    *criteria: Any,
) -> HealthCheck:
    model = db_models.SettlementQueueItem
    count = _count(session, model, *criteria)
    items = None
    if include_items:
        items = [_queue_item(i) for i in _rows(session, model, model.id.asc(), *criteria)]
    return HealthCheck(
        name=name,
        count=count,
        status=severity(name, count),
        description=description,
        items=items,
    )


def run_health_checks(
    session: Session,
    include_items: bool = True,
    now: datetime | None = None,
) -> HealthReport:
    """Run every check and return the aggregated report."""
    now = now or now_utc()
    stale_minutes = settings.lifecycle_config.stale_processing_minutes
    item = db_models.SettlementQueueItem
    checks: dict[str, HealthCheck] = {}

    checks["stuck_live"] = _stuck_events_check(
        session, "stuck_live", StatusNorm.LIVE, STUCK_LIVE_HOURS, now, include_items
    )
    checks["stuck_scheduled"] = _stuck_events_check(
        session, "stuck_scheduled", StatusNorm.SCHEDULED, STUCK_SCHEDULED_HOURS, now, include_items
    )

    orphaned_count = queue.count_unqueued_settleable_events(session)
    orphaned = queue.find_unqueued_settleable_events(session, _ITEM_LIMIT)
    orphaned_items = [_event_item(e) for e in orphaned]
    checks["final_not_queued"] = HealthCheck(
        name="final_not_queued",
        count=orphaned_count,
        status=severity("final_not_queued", orphaned_count),
        description="Settleable terminal events without a settlement queue row",
        items=orphaned_items if include_items else None,
    )

    missing_count = queue.count_final_events_without_winner(session)
    missing_items = [_event_item(e) for e in queue.find_final_events_without_winner(session, _ITEM_LIMIT)]
    checks["final_missing_winner"] = HealthCheck(
        name="final_missing_winner",
        count=missing_count,
        status=severity("final_missing_winner", missing_count),
        description="FINAL events without both scores; not queued until a refresh supplies them",
        items=missing_items if include_items else None,
    )

    checks["queued_too_long"] = _queue_check(
        session,
        "queued_too_long",
        f"Items due for more than {QUEUED_TOO_LONG_MINUTES} minutes and not yet claimed",
        include_items,
        item.status == SettlementStatus.QUEUED.value,
        item.next_attempt_at < now - timedelta(minutes=QUEUED_TOO_LONG_MINUTES),
    )
    checks["failed_many"] = _queue_check(
        session,
        "failed_many",
        f"Items with {FAILED_MANY_ATTEMPTS} or more failed attempts",
        include_items,
        item.status.in_([SettlementStatus.QUEUED.value, SettlementStatus.FAILED.value]),
        item.attempts >= FAILED_MANY_ATTEMPTS,
    )
    checks["processing_stale"] = _queue_check(
        session,
        "processing_stale",
        f"Items PROCESSING for more than {stale_minutes} minutes",
        include_items,
        and_(
            item.status == SettlementStatus.PROCESSING.value,
            item.locked_at < now - timedelta(minutes=stale_minutes),
        ),
    )

    expired = [
        {
            "job_name": row.job_name,
            "locked_by": row.locked_by,
            "locked_at": row.locked_at.isoformat(),
            "expires_at": row.expires_at.isoformat(),
        }
        for row in lock_store.list_locks(session)
        if row.expires_at < now
    ]
    checks["expired_job_locks"] = HealthCheck(
        name="expired_job_locks",
        count=len(expired),
        status=severity("expired_job_locks", len(expired)),
        description="Job lock rows past their expiry",
        items=expired if include_items else None,
    )

    report = HealthReport(
        status=overall_status(checks),
        checked_at=now,
        checks=checks,
        stale_locks=expired,
        orphaned_events=orphaned_items + missing_items,
        stats=queue.get_queue_stats(session, now=now),
    )
    log = logger.info if report.status == HEALTHY else logger.warning
    log("lifecycle_health_checked", status=report.status, **report.summary)
    return report


def release_stale_processing_locks(session: Session, now: datetime | None = None) -> int:
    """Return stale PROCESSING items to QUEUED. Attempts are left as they were."""
    now = now or now_utc()
    threshold = now - timedelta(minutes=settings.lifecycle_config.stale_processing_minutes)
    released = queue.release_stale_processing(session, older_than=threshold, now=now)
    session.commit()
    if released:
        logger.warning("stale_processing_released", count=len(released), item_ids=released)
    return len(released)


def enqueue_orphaned_final_games(session: Session, limit: int | None = None) -> int:
    """Queue settlement for terminal events the finalize pass missed."""
    batch = limit or settings.lifecycle_config.finalize_max_games
    enqueued = 0
    for event in queue.find_unqueued_settleable_events(session, batch):
        try:
            with session.begin_nested():
                if enqueue_event_settlement(session, event):
                    enqueued += 1
                    logger.info("orphaned_event_enqueued", event_id=event.id, league=event.league)
        except SQLAlchemyError as exc:
            logger.warning("orphaned_event_enqueue_error", event_id=event.id, error=str(exc))
    session.commit()
    return enqueued


def repair(session: Session) -> dict[str, int]:
    """Run every remediation and return counts per repair."""
    released = release_stale_processing_locks(session)
    enqueued = enqueue_orphaned_final_games(session)
    expired = lock_store.delete_expired_locks(session, now_utc())
    session.commit()
    logger.info(
        "lifecycle_health_repaired",
        released_processing=released,
        enqueued_orphans=enqueued,
        expired_locks_removed=expired,
    )
    return {
        "released_processing": released,
        "enqueued_orphans": enqueued,
        "expired_locks_removed": expired,
    }
