"""
Single Source of Truth (SSOT) for lifecycle-enabled leagues.

Discovery, sync and the scheduled tasks all read this registry. Never
hardcode league strings elsewhere.

To add a new league:
1. Add an entry to LEAGUE_CONFIG with its API-Sports host and league id
2. No other code changes are needed for discovery and sync
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class LeagueConfig:
    """Configuration for a single league on the upstream provider."""

    code: str                       # "NFL", "NBA", "SOCCER"
    display_name: str

    provider: str = "api-sports"
    base_url: str = ""
    games_path: str = "/games"      # "/fixtures" for soccer
    provider_league_id: int = 0

    # Month (1-12) up to which a date still belongs to the previous season.
    # 0 means the season is the calendar year.
    season_rollover_month: int = 0

    lifecycle_enabled: bool = True
    live_endpoint_enabled: bool = True   # Provider supports ?live=all


LEAGUE_CONFIG: dict[str, LeagueConfig] = {
    "NFL": LeagueConfig(
        code="NFL",
        display_name="NFL Football",
        base_url="https://v1.american-football.api-sports.io",
        provider_league_id=1,
        season_rollover_month=2,   # Jan/Feb games belong to prior season
        live_endpoint_enabled=True,
    ),
    "NBA": LeagueConfig(
        code="NBA",
        display_name="NBA Basketball",
        base_url="https://v1.basketball.api-sports.io",
        provider_league_id=12,
        season_rollover_month=6,
        live_endpoint_enabled=False,
    ),
    "NHL": LeagueConfig(
        code="NHL",
        display_name="NHL Hockey",
        base_url="https://v1.hockey.api-sports.io",
        provider_league_id=57,
        season_rollover_month=6,
        live_endpoint_enabled=False,
    ),
    "MLB": LeagueConfig(
        code="MLB",
        display_name="MLB Baseball",
        base_url="https://v1.baseball.api-sports.io",
        provider_league_id=1,
        live_endpoint_enabled=False,
    ),
    "SOCCER": LeagueConfig(
        code="SOCCER",
        display_name="Premier League",
        base_url="https://v3.football.api-sports.io",
        games_path="/fixtures",
        provider_league_id=39,
        live_endpoint_enabled=True,
    ),
}


def get_league_config(league_code: str) -> LeagueConfig:
    """
    Get configuration for a specific league.

    Raises:
        ValueError: If league_code is not in LEAGUE_CONFIG
    """
    if league_code not in LEAGUE_CONFIG:
        valid = ", ".join(LEAGUE_CONFIG.keys())
        raise ValueError(f"Unknown league '{league_code}'. Valid leagues: {valid}")
    return LEAGUE_CONFIG[league_code]


def get_lifecycle_leagues() -> list[str]:
    """Get leagues that take part in discovery and sync."""
    return [code for code, cfg in LEAGUE_CONFIG.items() if cfg.lifecycle_enabled]


def validate_league_code(league_code: str) -> str:
    """
    Validate and return an upper-cased league code.

    Raises:
        ValueError: If league_code is not valid
    """
    code = league_code.upper()
    if code not in LEAGUE_CONFIG:
        valid = ", ".join(LEAGUE_CONFIG.keys())
        raise ValueError(f"Invalid league_code '{league_code}'. Must be one of: {valid}")
    return code


def season_for_date(league_code: str, day: date) -> int:
    """Return the provider season year a calendar date belongs to."""
    cfg = get_league_config(league_code)
    if cfg.season_rollover_month and day.month <= cfg.season_rollover_month:
        return day.year - 1
    return day.year
