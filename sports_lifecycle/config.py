"""
Typed settings for the game lifecycle worker.

Uses Pydantic Settings to load configuration from environment variables
with validation and type safety. Local development may also use a root
.env file; in containers the variables are passed directly.
"""

from __future__ import annotations

import os
import socket
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .validate_env import validate_env


class EventSourceConfig(BaseModel):
    """Upstream event provider (API-Sports) client settings."""

    api_key: str | None = None
    request_timeout_seconds: float = 20.0
    # Bounded retry for a single league/date fetch
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    # Pause between consecutive upstream calls inside one phase
    inter_request_delay_seconds: float = Field(default=0.0, ge=0)
    rate_limit_wait_seconds: int = 60


class LifecycleConfig(BaseModel):
    """Windows, batch bounds and timing for the lifecycle phases."""

    discovery_hours_back: int = Field(default=36, ge=0)
    discovery_hours_forward: int = Field(default=36, ge=0)

    # Defaults for manual runs; scheduled runs use ScheduledBatchLimits
    max_games_per_league: int = Field(default=500, ge=1)
    sync_max_games: int = Field(default=200, ge=1)
    finalize_max_games: int = Field(default=100, ge=1)
    settle_max_items: int = Field(default=50, ge=1)

    # Sync picks up scheduled games this close to (or this far past) start
    sync_pregame_window_minutes: int = Field(default=30, ge=0)
    sync_lookback_hours: int = Field(default=6, ge=0)

    # A phase task is killed at the hard limit; its lock must outlive it
    task_time_limit_seconds: int = Field(default=900, ge=120)
    lock_ttl_minutes: int = Field(default=20, ge=1)
    stuck_threshold_hours: int = Field(default=4, ge=1)
    stuck_max_games: int = Field(default=100, ge=1)
    stale_processing_minutes: int = Field(default=10, ge=1)

    # Settlement retry: 60s * 5^n capped at 12h (1m, 5m, 25m, 2h05m, 10h25m)
    settlement_max_attempts: int = Field(default=5, ge=1)
    settlement_backoff_base_seconds: float = Field(default=60.0, gt=0)
    settlement_backoff_factor: float = Field(default=5.0, ge=1)
    settlement_backoff_max_seconds: float = Field(default=12 * 3600.0, gt=0)
    failed_retry_batch_size: int = Field(default=25, ge=1)

    @model_validator(mode="after")
    def _lock_outlives_task(self) -> LifecycleConfig:
        if self.lock_ttl_minutes * 60 <= self.task_time_limit_seconds:
            raise ValueError(
                f"lock_ttl_minutes ({self.lock_ttl_minutes}) must exceed the task time limit "
                f"({self.task_time_limit_seconds}s) or a second worker can take a held lock"
            )
        return self


class ScheduledBatchLimits(BaseModel):
    """Smaller per-phase bounds used by the beat-scheduled runs."""

    max_games_per_league: int = 50
    sync_max_games: int = 25
    finalize_max_games: int = 25
    settle_max_items: int = 25


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are validated by Pydantic. Nested models can be overridden
    with double-underscore variables, e.g. LIFECYCLE_CONFIG__SYNC_MAX_GAMES.
    """
    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1] / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        extra="allow",
    )

    database_url: str = Field(..., alias="DATABASE_URL")

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_async_to_sync(cls, v: str) -> str:
        """
        Convert asyncpg URL to psycopg URL for synchronous SQLAlchemy.

        Other services may share a DATABASE_URL written for asyncpg; the
        Celery workers need the synchronous psycopg driver.
        """
        if isinstance(v, str) and "asyncpg" in v:
            return v.replace("asyncpg", "psycopg")
        return v

    redis_url: str = Field("redis://localhost:6379/3", alias="REDIS_URL")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str | None = Field(None, alias="LOG_LEVEL")
    sql_echo: bool = Field(False, alias="SQL_ECHO")

    api_sports_key: str | None = Field(None, alias="API_SPORTS_KEY")
    api_internal_url: str = Field("http://api:8000", alias="API_INTERNAL_URL")
    api_key: str | None = Field(None, alias="API_KEY")
    worker_id: str | None = Field(None, alias="LIFECYCLE_WORKER_ID")

    event_source_config: EventSourceConfig = Field(default_factory=EventSourceConfig)
    lifecycle_config: LifecycleConfig = Field(default_factory=LifecycleConfig)
    scheduled_limits: ScheduledBatchLimits = Field(default_factory=ScheduledBatchLimits)

    @model_validator(mode="after")
    def _apply_overrides(self) -> Settings:
        """
        Fill derived values: the provider key lives at top level in the
        environment, and the worker id defaults to host + pid.
        """
        if self.api_sports_key and not self.event_source_config.api_key:
            self.event_source_config.api_key = self.api_sports_key
        if not self.worker_id:
            self.worker_id = f"worker-{socket.gethostname()}-{os.getpid()}"
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached settings instance.

    Environment validation runs first so missing variables fail with a
    readable message rather than a pydantic error.
    """
    validate_env()
    return Settings()


# Global settings instance - import this in other modules
settings = get_settings()
