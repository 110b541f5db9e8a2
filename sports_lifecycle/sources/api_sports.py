"""API-Sports event source (games/fixtures endpoints across sports).

Each league lives on its own API-Sports host (v1.basketball, v3.football,
...). Requests carry only the ``x-apisports-key`` header. A 200 response
can still carry an ``errors`` object, which is treated as a failed call.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import settings
from ..config_sports import LeagueConfig, get_league_config, season_for_date
from ..logging import logger
from ..models.schemas import RawEvent
from ..utils.parsing import parse_event_datetime, parse_int
from .base import EventSourceError, RateLimitError

PROVIDER = "api-sports"
API_KEY_HEADER = "x-apisports-key"

# Error keys API-Sports uses when the plan quota is exhausted
_RATE_LIMIT_ERROR_KEYS = {"requests", "rateLimit", "ratelimit"}


class ApiSportsClient:
    """Client for API-Sports games/fixtures endpoints."""

    provider = PROVIDER

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self.api_key = api_key or settings.event_source_config.api_key
        if client is None:
            client = httpx.Client(
                timeout=timeout or settings.event_source_config.request_timeout_seconds,
                headers={"User-Agent": "sports-lifecycle/1.0"},
            )
        self.client = client

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> ApiSportsClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch_events(self, league: str, day: date) -> list[RawEvent]:
        """Fetch every event the provider lists for *league* on *day* (UTC)."""
        cfg = _league_config(league)
        params = {
            "date": day.isoformat(),
            "league": cfg.provider_league_id,
            "season": season_for_date(cfg.code, day),
        }
        events = _parse(cfg, self._get(cfg, params))
        logger.info(
            "api_sports_events_fetched",
            league=cfg.code,
            date=str(day),
            season=params["season"],
            count=len(events),
        )
        return events

    def fetch_live_events(self, league: str) -> list[RawEvent]:
        """Fetch events the provider currently reports as in play."""
        cfg = _league_config(league)
        if not cfg.live_endpoint_enabled:
            logger.debug("api_sports_live_unsupported", league=cfg.code)
            return []
        events = _parse(cfg, self._get(cfg, {"live": "all", "league": cfg.provider_league_id}))
        logger.info("api_sports_live_fetched", league=cfg.code, count=len(events))
        return events

    def _get(self, cfg: LeagueConfig, params: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise EventSourceError("API_SPORTS_KEY is not configured")

        url = f"{cfg.base_url.rstrip('/')}{cfg.games_path}"
        try:
            response = self.client.get(url, params=params, headers={API_KEY_HEADER: self.api_key})
        except httpx.HTTPError as exc:
            raise EventSourceError(f"{cfg.code} request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitError(f"{cfg.code} rate limited", status_code=429)
        if response.status_code != 200:
            logger.warning(
                "api_sports_fetch_failed",
                league=cfg.code,
                status=response.status_code,
                body=response.text[:200],
            )
            raise EventSourceError(
                f"{cfg.code} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EventSourceError(f"{cfg.code} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise EventSourceError(f"{cfg.code} returned an unexpected payload shape")

        errors = payload.get("errors")
        if errors:
            keys = set(errors) if isinstance(errors, dict) else set()
            message = f"{cfg.code} provider errors: {errors}"
            if keys & _RATE_LIMIT_ERROR_KEYS:
                raise RateLimitError(message, status_code=response.status_code)
            raise EventSourceError(message, status_code=response.status_code)
        return payload


def _league_config(league: str) -> LeagueConfig:
    try:
        return get_league_config(league)
    except ValueError as exc:
        raise EventSourceError(str(exc)) from exc


def _parse(cfg: LeagueConfig, payload: dict[str, Any]) -> list[RawEvent]:
    # A reshaped envelope must fail the call, not the phase
    try:
        return parse_events_payload(cfg, payload)
    except (AttributeError, TypeError, KeyError) as exc:
        raise EventSourceError(f"{cfg.code} returned a malformed payload: {exc}") from exc


def parse_events_payload(cfg: LeagueConfig, payload: dict[str, Any]) -> list[RawEvent]:
    """Parse an API-Sports response envelope, skipping unusable records."""
    events: list[RawEvent] = []
    skipped = 0
    for item in payload.get("response") or []:
        if not isinstance(item, dict):
            skipped += 1
            continue
        event = parse_event(cfg, item)
        if event is None:
            skipped += 1
            continue
        events.append(event)
    if skipped:
        logger.warning("api_sports_records_skipped", league=cfg.code, skipped=skipped)
    return events


def parse_event(cfg: LeagueConfig, item: dict[str, Any]) -> RawEvent | None:
    """Parse one games/fixtures record. Returns None without an external id."""
    if cfg.code == "SOCCER":
        fields = _soccer_fields(item)
    else:
        fields = _game_fields(item)

    if fields["external_id"] is None:
        return None

    starts_at = fields["starts_at"]
    season = parse_int((item.get("league") or {}).get("season")) or parse_int(item.get("season"))
    if season is None and starts_at is not None:
        season = season_for_date(cfg.code, starts_at.date())

    try:
        return RawEvent(
            provider=PROVIDER,
            league=cfg.code,
            season=season,
            raw_payload=item,
            **fields,
        )
    except ValidationError as exc:
        logger.warning("api_sports_record_invalid", league=cfg.code, error=str(exc))
        return None


def _status_token(status: Any) -> str | None:
    if isinstance(status, str) and status.strip():
        return status.strip()
    if isinstance(status, dict):
        for key in ("short", "long"):
            value = status.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _team_name(team: Any) -> str | None:
    if not isinstance(team, dict):
        return None
    name = team.get("name")
    if name:
        return str(name)
    if team.get("id") is not None:
        return str(team["id"])
    return None


def _score(value: Any) -> int | None:
    if isinstance(value, dict):
        return parse_int(value.get("total"))
    return parse_int(value)


def _game_fields(item: dict[str, Any]) -> dict[str, Any]:
    # American football nests the game block under "game"
    game = item.get("game") if isinstance(item.get("game"), dict) else item
    teams = item.get("teams") or {}
    scores = item.get("scores") or {}
    external_id = game.get("id")
    return {
        "external_id": str(external_id) if external_id is not None else None,
        "starts_at": parse_event_datetime(game.get("date")) or parse_event_datetime(
            {"timestamp": game.get("timestamp")} if game.get("timestamp") else None
        ),
        "home_team": _team_name(teams.get("home")),
        "away_team": _team_name(teams.get("away")),
        "home_score": _score(scores.get("home")),
        "away_score": _score(scores.get("away")),
        "status_raw": _status_token(game.get("status")),
    }


def _soccer_fields(item: dict[str, Any]) -> dict[str, Any]:
    fixture = item.get("fixture") or {}
    teams = item.get("teams") or {}
    goals = item.get("goals") or {}
    fulltime = (item.get("score") or {}).get("fulltime") or {}
    external_id = fixture.get("id")
    home_goals = goals.get("home") if goals.get("home") is not None else fulltime.get("home")
    away_goals = goals.get("away") if goals.get("away") is not None else fulltime.get("away")
    return {
        "external_id": str(external_id) if external_id is not None else None,
        "starts_at": parse_event_datetime(fixture),
        "home_team": _team_name(teams.get("home")),
        "away_team": _team_name(teams.get("away")),
        "home_score": parse_int(home_goals),
        "away_score": parse_int(away_goals),
        "status_raw": _status_token(fixture.get("status")),
    }
