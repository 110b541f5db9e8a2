"""SyncEngine: refresh live and imminent events from the provider.

Candidates are LIVE events plus SCHEDULED/POSTPONED events whose start
falls near now. They are grouped by (league, start date) so each group
costs one upstream call, then written through the same upsert as
Discovery. An event that turns FINAL or CANCELED in this pass is queued
for settlement inline.

Games beyond ``max_games`` are deferred (reported, picked up next run),
never dropped.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config_sports import LEAGUE_CONFIG
from ..db import db_models
from ..logging import logger
from ..models.enums import StatusNorm
from ..models.schemas import RawEvent
from ..normalization import normalize_event
from ..persistence.events import select_stuck_events, select_sync_candidates, upsert_event
from ..sources.base import EventSource, EventSourceError, RateLimitError
from ..utils.datetime_utils import ensure_utc, now_utc
from ..utils.retry import RetryPolicy, call_with_retry, fetch_retry_policy
from .finalize import enqueue_event_settlement


@dataclass
class SyncResult:
    total_fetched: int = 0
    total_upserted: int = 0
    total_finalized: int = 0
    total_enqueued: int = 0
    candidates: int = 0
    deferred: int = 0
    missing: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_fetched": self.total_fetched,
            "total_upserted": self.total_upserted,
            "total_finalized": self.total_finalized,
            "total_enqueued": self.total_enqueued,
            "candidates": self.candidates,
            "deferred": self.deferred,
            "missing": self.missing,
            "errors": list(self.errors),
        }


def _group_key(event: db_models.SportsEvent, today: date) -> tuple[str, date]:
    day = ensure_utc(event.starts_at).date() if event.starts_at else today
    return event.league, day


def _group_events(
    events: list[db_models.SportsEvent], today: date
) -> dict[tuple[str, date], list[db_models.SportsEvent]]:
    groups: dict[tuple[str, date], list[db_models.SportsEvent]] = {}
    for event in events:
        groups.setdefault(_group_key(event, today), []).append(event)
    return groups


def _fetch(
    fn: Callable[[], list[RawEvent]],
    policy: RetryPolicy,
    sleep: Callable[[float], None],
    operation: str,
) -> list[RawEvent]:
    return call_with_retry(
        fn,
        policy,
        retry_on=(EventSourceError,),
        give_up_on=(RateLimitError,),
        sleep=sleep,
        operation=operation,
    )


def _refresh_events(
    session: Session,
    source: EventSource,
    events: list[db_models.SportsEvent],
    result: SyncResult,
    policy: RetryPolicy,
    sleep: Callable[[float], None],
    now: datetime,
    phase: str,
) -> None:
    """Re-fetch *events* grouped by league/date and apply the provider's view."""
    today = now.date()
    live_checked: dict[str, dict[str, RawEvent]] = {}

    for (league, day), group in _group_events(events, today).items():
        if league not in LEAGUE_CONFIG:
            result.errors.append(f"{league}: unknown league, {len(group)} events not refreshed")
            logger.warning(f"{phase}_unknown_league", league=league, events=len(group))
            continue
        upstream: dict[str, RawEvent] = {}

        if any(e.status_norm == StatusNorm.LIVE.value for e in group):
            if league not in live_checked:
                try:
                    live = _fetch(
                        lambda: source.fetch_live_events(league),
                        policy,
                        sleep,
                        f"{phase}:live:{league}",
                    )
                    result.total_fetched += len(live)
                    live_checked[league] = {raw.external_id: raw for raw in live}
                except EventSourceError as exc:
                    live_checked[league] = {}
                    result.errors.append(f"{league} live: {exc}")
                    logger.warning(f"{phase}_live_fetch_error", league=league, error=str(exc))
            upstream.update(live_checked[league])

        try:
            dated = _fetch(
                lambda: source.fetch_events(league, day),
                policy,
                sleep,
                f"{phase}:{league}:{day.isoformat()}",
            )
        except EventSourceError as exc:
            result.errors.append(f"{league} {day.isoformat()}: {exc}")
            logger.warning(f"{phase}_fetch_error", league=league, date=str(day), error=str(exc))
            dated = []
            if not upstream:
                continue
        result.total_fetched += len(dated)
        # The dated feed is the fuller record; it wins over the live snapshot
        for raw in dated:
            upstream[raw.external_id] = raw

        for event in group:
            raw = upstream.get(event.external_id)
            if raw is None:
                result.missing += 1
                logger.debug(
                    f"{phase}_event_missing_upstream",
                    event_id=event.id,
                    league=league,
                    external_id=event.external_id,
                )
                continue
            normalized = normalize_event(raw, now=now)
            try:
                with session.begin_nested():
                    upsert = upsert_event(session, normalized, now=now)
                    result.total_upserted += 1
                    if upsert.became_settleable:
                        result.total_finalized += 1
                        if enqueue_event_settlement(session, event):
                            result.total_enqueued += 1
            except SQLAlchemyError as exc:
                result.errors.append(f"{league} {event.external_id}: {exc}")
                logger.warning(
                    f"{phase}_upsert_error",
                    event_id=event.id,
                    league=league,
                    error=str(exc),
                )

        session.commit()


def sync_events(
    session: Session,
    source: EventSource,
    max_games: int | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> SyncResult:
    """Refresh LIVE and near-start events, enqueueing any that just finished."""
    cfg = settings.lifecycle_config
    limit = max_games or cfg.sync_max_games
    policy = policy or fetch_retry_policy()
    now = now or now_utc()

    candidates, deferred = select_sync_candidates(
        session,
        now=now,
        lookback=timedelta(hours=cfg.sync_lookback_hours),
        pregame_window=timedelta(minutes=cfg.sync_pregame_window_minutes),
        limit=limit,
    )
    result = SyncResult(candidates=len(candidates), deferred=deferred)
    if not candidates:
        logger.debug("sync_no_candidates")
        return result

    logger.info("sync_start", candidates=len(candidates), deferred=deferred, limit=limit)
    _refresh_events(session, source, candidates, result, policy, sleep, now, phase="sync")
    logger.info(
        "sync_complete",
        fetched=result.total_fetched,
        upserted=result.total_upserted,
        finalized=result.total_finalized,
        enqueued=result.total_enqueued,
        deferred=result.deferred,
        missing=result.missing,
        errors=len(result.errors),
    )
    return result


def refresh_stuck_events(
    session: Session,
    source: EventSource,
    max_games: int | None = None,
    stuck_hours: int | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> SyncResult:
    """Re-check events that started long ago but were never finalized.

    Sync only looks a few hours back; an event whose final result arrived
    after it left that window would otherwise stay LIVE forever.
    """
    cfg = settings.lifecycle_config
    limit = max_games or cfg.stuck_max_games
    hours = stuck_hours or cfg.stuck_threshold_hours
    policy = policy or fetch_retry_policy()
    now = now or now_utc()

    events = select_stuck_events(session, older_than=now - timedelta(hours=hours), limit=limit)
    result = SyncResult(candidates=len(events))
    if not events:
        logger.debug("stuck_refresh_no_candidates")
        return result

    logger.info("stuck_refresh_start", candidates=len(events), threshold_hours=hours)
    _refresh_events(session, source, events, result, policy, sleep, now, phase="stuck_refresh")
    logger.info(
        "stuck_refresh_complete",
        candidates=result.candidates,
        upserted=result.total_upserted,
        finalized=result.total_finalized,
        enqueued=result.total_enqueued,
        missing=result.missing,
        errors=len(result.errors),
    )
    return result
