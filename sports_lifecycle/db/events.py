"""Event model: one sporting event keyed by provider + external id."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import text

from .base import Base


class SportsEvent(Base):
    """Sporting event tracked through the lifecycle.

    Invariants:
    - (provider, external_id) identifies an event; id is internal only
    - winner_side is set iff status_norm is FINAL and both scores are known
      (a FINAL without scores waits for the stuck-event refresh)
    - rows are never deleted
    """

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    league: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    home_team: Mapped[str | None] = mapped_column(String(200), nullable=True)
    away_team: Mapped[str | None] = mapped_column(String(200), nullable=True)
    home_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    away_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_raw: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status_norm: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="SCHEDULED"
    )
    winner_side: Mapped[str | None] = mapped_column(String(10), nullable=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, server_default=text("'{}'::jsonb"), nullable=False
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_event_identity"),
        CheckConstraint(
            "status_norm IN ('SCHEDULED', 'LIVE', 'FINAL', 'POSTPONED', 'CANCELED')",
            name="ck_events_status_norm",
        ),
        CheckConstraint(
            "winner_side IS NULL OR status_norm = 'FINAL'",
            name="ck_events_winner_only_final",
        ),
        Index("idx_events_status_starts", "status_norm", "starts_at"),
        Index("idx_events_league_starts", "league", "starts_at"),
    )
