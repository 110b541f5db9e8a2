"""Event persistence: identity-keyed upsert with a status regression guard.

Events are identified by (provider, external_id). An upsert locks the
existing row (or inserts with ON CONFLICT DO NOTHING and reloads on a lost
race), then applies the incoming fields in Python so the status guard and
winner/finalized_at bookkeeping stay in one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from ..db import db_models
from ..logging import logger
from ..models.enums import StatusNorm
from ..models.schemas import NormalizedEvent
from ..normalization.status import needs_settlement
from ..utils.datetime_utils import now_utc


@dataclass(frozen=True)
class EventUpsertResult:
    event_id: int
    inserted: bool
    changed: bool
    previous_status: StatusNorm | None
    status: StatusNorm
    regression_blocked: bool = False

    @property
    def became_settleable(self) -> bool:
        """True when this write moved the event into FINAL or CANCELED."""
        if not needs_settlement(self.status):
            return False
        return self.previous_status is None or self.previous_status != self.status


def resolve_status_transition(
    current_status: StatusNorm | str | None,
    incoming_status: StatusNorm | str,
    allow_regression: bool = False,
) -> StatusNorm:
    """Resolve a safe status transition.

    Rules:
    - FINAL holds unless allow_regression is set (operator correction)
    - every other status accepts the incoming value, including
      corrections out of POSTPONED or CANCELED
    """
    incoming = StatusNorm(incoming_status)
    if current_status is None:
        return incoming
    current = StatusNorm(current_status)
    if current == StatusNorm.FINAL and incoming != StatusNorm.FINAL and not allow_regression:
        return current
    return incoming


def _identity_filter(provider: str, external_id: str):
    model = db_models.SportsEvent
    return and_(model.provider == provider, model.external_id == external_id)


def get_event_for_update(
    session: Session, provider: str, external_id: str
) -> db_models.SportsEvent | None:
    stmt = (
        select(db_models.SportsEvent)
        .where(_identity_filter(provider, external_id))
        .with_for_update()
    )
    return session.execute(stmt).scalar_one_or_none()


def _insert_event(session: Session, event: NormalizedEvent, now: datetime) -> int | None:
    status = event.status_norm
    values = {
        "provider": event.provider,
        "external_id": event.external_id,
        "league": event.league,
        "season": event.season,
        "starts_at": event.starts_at,
        "home_team": event.home_team,
        "away_team": event.away_team,
        "home_score": event.home_score,
        "away_score": event.away_score,
        "status_raw": event.status_raw,
        "status_norm": status.value,
        "winner_side": event.winner_side.value if event.winner_side else None,
        "raw_payload": event.raw_payload,
        "finalized_at": now if needs_settlement(status) else None,
        "last_synced_at": now,
    }
    stmt = (
        insert(db_models.SportsEvent)
        .values(**values)
        .on_conflict_do_nothing(constraint="uq_event_identity")
        .returning(db_models.SportsEvent.id)
    )
    return session.execute(stmt).scalar_one_or_none()


def _snapshot(row: db_models.SportsEvent) -> tuple:
    return (
        row.status_norm,
        row.status_raw,
        row.home_score,
        row.away_score,
        row.winner_side,
        row.starts_at,
        row.home_team,
        row.away_team,
    )


def _apply_update(
    row: db_models.SportsEvent,
    event: NormalizedEvent,
    allow_regression: bool,
    now: datetime,
) -> EventUpsertResult:
    previous = StatusNorm(row.status_norm) if row.status_norm else None
    resolved = resolve_status_transition(previous, event.status_norm, allow_regression)
    row.last_synced_at = now

    if resolved != event.status_norm:
        logger.warning(
            "event_status_regression_blocked",
            event_id=row.id,
            league=row.league,
            external_id=row.external_id,
            current=previous.value if previous else None,
            incoming=event.status_norm.value,
        )
        return EventUpsertResult(
            event_id=row.id,
            inserted=False,
            changed=False,
            previous_status=previous,
            status=resolved,
            regression_blocked=True,
        )

    before = _snapshot(row)
    row.status_norm = resolved.value
    row.status_raw = event.status_raw
    row.home_score = event.home_score
    row.away_score = event.away_score
    row.winner_side = event.winner_side.value if (
        resolved == StatusNorm.FINAL and event.winner_side
    ) else None
    row.raw_payload = event.raw_payload
    if event.starts_at is not None:
        row.starts_at = event.starts_at
    if event.home_team:
        row.home_team = event.home_team
    if event.away_team:
        row.away_team = event.away_team
    if event.season is not None:
        row.season = event.season

    if needs_settlement(resolved):
        if row.finalized_at is None or previous != resolved:
            row.finalized_at = now
    else:
        row.finalized_at = None

    changed = _snapshot(row) != before
    if previous != resolved:
        logger.info(
            "event_status_transition",
            event_id=row.id,
            league=row.league,
            external_id=row.external_id,
            from_status=previous.value if previous else None,
            to_status=resolved.value,
            forced=allow_regression and previous == StatusNorm.FINAL,
        )
    return EventUpsertResult(
        event_id=row.id,
        inserted=False,
        changed=changed,
        previous_status=previous,
        status=resolved,
    )


def upsert_event(
    session: Session,
    event: NormalizedEvent,
    allow_regression: bool = False,
    now: datetime | None = None,
) -> EventUpsertResult:
    """Insert an unseen event or update a known one.

    Re-applying an unchanged event leaves the row as it was apart from
    ``last_synced_at`` and reports ``changed=False``.
    """
    now = now or now_utc()
    row = get_event_for_update(session, event.provider, event.external_id)
    if row is None:
        new_id = _insert_event(session, event, now)
        if new_id is not None:
            return EventUpsertResult(
                event_id=new_id,
                inserted=True,
                changed=True,
                previous_status=None,
                status=event.status_norm,
            )
        # A concurrent writer inserted the row first
        row = get_event_for_update(session, event.provider, event.external_id)
        if row is None:
            raise RuntimeError(
                f"event {event.provider}/{event.external_id} vanished after insert conflict"
            )
    return _apply_update(row, event, allow_regression, now)


def select_sync_candidates(
    session: Session,
    now: datetime,
    lookback: timedelta,
    pregame_window: timedelta,
    limit: int,
) -> tuple[list[db_models.SportsEvent], int]:
    """LIVE events plus SCHEDULED/POSTPONED events starting near now.

    Returns at most *limit* events, oldest start first, and the number of
    matching events deferred to a later run.
    """
    model = db_models.SportsEvent
    predicate = or_(
        model.status_norm == StatusNorm.LIVE.value,
        and_(
            model.status_norm.in_([StatusNorm.SCHEDULED.value, StatusNorm.POSTPONED.value]),
            model.starts_at.isnot(None),
            model.starts_at >= now - lookback,
            model.starts_at <= now + pregame_window,
        ),
    )
    total = session.execute(select(func.count()).select_from(model).where(predicate)).scalar_one()
    rows = (
        session.execute(
            select(model)
            .where(predicate)
            .order_by(model.starts_at.asc().nullslast(), model.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return list(rows), max(int(total) - len(rows), 0)


def select_stuck_events(
    session: Session,
    older_than: datetime,
    limit: int,
) -> list[db_models.SportsEvent]:
    """Events that should have ended by now but were never finalized.

    Covers LIVE/SCHEDULED events that started before *older_than* and FINAL
    events still missing a winner because the provider sent no scores.
    """
    model = db_models.SportsEvent
    stmt = (
        select(model)
        .where(
            or_(
                and_(
                    model.status_norm.in_([StatusNorm.LIVE.value, StatusNorm.SCHEDULED.value]),
                    model.starts_at.isnot(None),
                    model.starts_at < older_than,
                    model.finalized_at.is_(None),
                ),
                and_(
                    model.status_norm == StatusNorm.FINAL.value,
                    model.winner_side.is_(None),
                ),
            )
        )
        .order_by(model.starts_at.asc().nullslast(), model.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())
