"""Discovery: pull events for a rolling window and upsert them.

Work is isolated per league and per date. A failed fetch is recorded in
``errors`` and the next date/league continues; a failed row write rolls
back only its own savepoint. Each league commits on its own so a later
failure never discards earlier leagues.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config_sports import get_lifecycle_leagues, validate_league_code
from ..logging import logger
from ..models.schemas import RawEvent
from ..normalization import normalize_event
from ..persistence.events import upsert_event
from ..sources.base import EventSource, EventSourceError, RateLimitError
from ..utils.datetime_utils import dates_between, now_utc
from ..utils.retry import RetryPolicy, call_with_retry, fetch_retry_policy


@dataclass(frozen=True)
class DiscoveryWindow:
    hours_back: int = 36
    hours_forward: int = 36

    @classmethod
    def from_settings(cls) -> DiscoveryWindow:
        cfg = settings.lifecycle_config
        return cls(hours_back=cfg.discovery_hours_back, hours_forward=cfg.discovery_hours_forward)

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        return now - timedelta(hours=self.hours_back), now + timedelta(hours=self.hours_forward)

    def dates(self, now: datetime) -> list[date]:
        start, end = self.bounds(now)
        return dates_between(start, end)


@dataclass
class DiscoveryResult:
    fetched: int = 0
    upserted: int = 0
    inserted: int = 0
    updated: int = 0
    truncated: int = 0
    errors: list[str] = field(default_factory=list)
    leagues: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "upserted": self.upserted,
            "inserted": self.inserted,
            "updated": self.updated,
            "truncated": self.truncated,
            "errors": list(self.errors),
            "leagues": dict(self.leagues),
        }


def _sort_key(event: RawEvent) -> tuple:
    # Unknown start times sort last, then a stable id order
    return (event.starts_at is None, event.starts_at or datetime.max, event.external_id)


def _fetch_league(
    source: EventSource,
    league: str,
    days: list[date],
    policy: RetryPolicy,
    sleep: Callable[[float], None],
    result: DiscoveryResult,
) -> list[RawEvent]:
    """Fetch every date for one league, deduplicated by external id."""
    collected: dict[str, RawEvent] = {}
    delay = settings.event_source_config.inter_request_delay_seconds
    for index, day in enumerate(days):
        if index and delay:
            sleep(delay)
        try:
            events = call_with_retry(
                lambda: source.fetch_events(league, day),
                policy,
                retry_on=(EventSourceError,),
                give_up_on=(RateLimitError,),
                sleep=sleep,
                operation=f"discover:{league}:{day.isoformat()}",
            )
        except RateLimitError as exc:
            result.errors.append(f"{league} {day.isoformat()}: {exc}")
            logger.warning("discover_rate_limited", league=league, date=str(day), error=str(exc))
            break
        except EventSourceError as exc:
            result.errors.append(f"{league} {day.isoformat()}: {exc}")
            logger.warning("discover_fetch_error", league=league, date=str(day), error=str(exc))
            continue
        for event in events:
            collected[event.external_id] = event
    return sorted(collected.values(), key=_sort_key)


def discover_events(
    session: Session,
    source: EventSource,
    window: DiscoveryWindow | None = None,
    max_per_league: int | None = None,
    leagues: Iterable[str] | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> DiscoveryResult:
    """Fetch each league over the rolling window and upsert every event."""
    window = window or DiscoveryWindow.from_settings()
    limit = max_per_league or settings.lifecycle_config.max_games_per_league
    league_codes = list(leagues) if leagues is not None else get_lifecycle_leagues()
    policy = policy or fetch_retry_policy()
    now = now or now_utc()
    days = window.dates(now)

    result = DiscoveryResult()
    logger.info(
        "discover_start",
        leagues=league_codes,
        dates=[d.isoformat() for d in days],
        max_per_league=limit,
    )

    for requested in league_codes:
        try:
            league = validate_league_code(requested)
        except ValueError as exc:
            result.errors.append(f"{requested}: {exc}")
            logger.warning("discover_unknown_league", league=requested, error=str(exc))
            continue
        errors_before = len(result.errors)
        events = _fetch_league(source, league, days, policy, sleep, result)
        fetched = len(events)
        truncated = max(fetched - limit, 0)
        if truncated:
            logger.info("discover_truncated", league=league, fetched=fetched, limit=limit)
            events = events[:limit]

        inserted = updated = upserted = 0
        for raw in events:
            normalized = normalize_event(raw, now=now)
            try:
                with session.begin_nested():
                    upsert = upsert_event(session, normalized, now=now)
            except SQLAlchemyError as exc:
                result.errors.append(f"{league} {raw.external_id}: {exc}")
                logger.warning(
                    "discover_upsert_error",
                    league=league,
                    external_id=raw.external_id,
                    error=str(exc),
                )
                continue
            if upsert.inserted:
                inserted += 1
            elif upsert.changed:
                updated += 1
            upserted += 1

        session.commit()

        result.fetched += fetched
        result.upserted += upserted
        result.truncated += truncated
        result.inserted += inserted
        result.updated += updated
        result.leagues[league] = {
            "fetched": fetched,
            "upserted": upserted,
            "inserted": inserted,
            "updated": updated,
            "truncated": truncated,
            "errors": len(result.errors) - errors_before,
        }
        logger.info("discover_league_done", league=league, **result.leagues[league])

    logger.info(
        "discover_complete",
        fetched=result.fetched,
        upserted=result.upserted,
        inserted=result.inserted,
        updated=result.updated,
        truncated=result.truncated,
        errors=len(result.errors),
    )
    return result
