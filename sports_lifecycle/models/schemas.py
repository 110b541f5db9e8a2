"""Pydantic models passed between the event source and persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .enums import StatusNorm, WinnerSide


class RawEvent(BaseModel):
    """One event as reported by the upstream provider, before normalization."""

    provider: str = "api-sports"
    league: str
    external_id: str
    season: int | None = None
    starts_at: datetime | None = None
    home_team: str | None = None
    away_team: str | None = None
    home_score: int | None = None
    away_score: int | None = None
    status_raw: str | None = None
    # Explicit provider flags, when the feed carries them
    is_over: bool | None = None
    is_canceled: bool | None = None
    is_in_progress: bool | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, v: Any) -> str:
        if v is None:
            raise ValueError("external_id is required")
        text = str(v).strip()
        if not text:
            raise ValueError("external_id is required")
        return text

    @field_validator("league")
    @classmethod
    def _upper_league(cls, v: str) -> str:
        return v.upper()


class NormalizedEvent(RawEvent):
    """Raw event plus the canonical status and derived winner."""

    status_norm: StatusNorm
    winner_side: WinnerSide | None = None
    status_rule: str | None = None
    status_flags: list[str] = Field(default_factory=list)
