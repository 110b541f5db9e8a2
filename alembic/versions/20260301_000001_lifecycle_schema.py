"""Create lifecycle schema: events, job locks, settlement queue, job runs.

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20260301_000001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("league", sa.String(length=20), nullable=False),
        sa.Column("season", sa.Integer(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("home_team", sa.String(length=200), nullable=True),
        sa.Column("away_team", sa.String(length=200), nullable=True),
        sa.Column("home_score", sa.Integer(), nullable=True),
        sa.Column("away_score", sa.Integer(), nullable=True),
        sa.Column("status_raw", sa.String(length=100), nullable=True),
        sa.Column(
            "status_norm",
            sa.String(length=20),
            server_default="SCHEDULED",
            nullable=False,
        ),
        sa.Column("winner_side", sa.String(length=10), nullable=True),
        sa.Column(
            "raw_payload",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "external_id", name="uq_event_identity"),
        sa.CheckConstraint(
            "status_norm IN ('SCHEDULED', 'LIVE', 'FINAL', 'POSTPONED', 'CANCELED')",
            name="ck_events_status_norm",
        ),
        sa.CheckConstraint(
            "winner_side IS NULL OR status_norm = 'FINAL'",
            name="ck_events_winner_only_final",
        ),
    )
    op.create_index("ix_events_league", "events", ["league"])
    op.create_index("idx_events_status_starts", "events", ["status_norm", "starts_at"])
    op.create_index("idx_events_league_starts", "events", ["league", "starts_at"])

    op.create_table(
        "job_locks",
        sa.Column("job_name", sa.String(length=50), primary_key=True),
        sa.Column("locked_by", sa.String(length=200), nullable=False),
        sa.Column(
            "locked_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "meta",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
    )
    op.create_index("idx_job_locks_expires", "job_locks", ["expires_at"])

    op.create_table(
        "settlement_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("league", sa.String(length=20), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), server_default="QUEUED", nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("locked_by", sa.String(length=200), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('QUEUED', 'PROCESSING', 'SETTLED', 'FAILED')",
            name="ck_settlement_queue_status",
        ),
        sa.CheckConstraint(
            "status <> 'PROCESSING' OR (locked_by IS NOT NULL AND locked_at IS NOT NULL)",
            name="ck_settlement_queue_processing_locked",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_settlement_queue_attempts"),
    )
    op.create_index("ix_settlement_queue_status", "settlement_queue", ["status"])
    op.create_index(
        "idx_settlement_queue_claim",
        "settlement_queue",
        ["status", "next_attempt_at", "created_at"],
    )

    op.create_table(
        "lifecycle_job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("phase", sa.String(length=50), nullable=False),
        sa.Column(
            "leagues",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("worker_id", sa.String(length=200), nullable=True),
        sa.Column("celery_task_id", sa.String(length=100), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("summary_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_lifecycle_job_runs_phase", "lifecycle_job_runs", ["phase"])
    op.create_index("ix_lifecycle_job_runs_status", "lifecycle_job_runs", ["status"])
    op.create_index(
        "idx_lifecycle_runs_phase_started",
        "lifecycle_job_runs",
        ["phase", "started_at"],
    )


def downgrade() -> None:
    op.drop_table("lifecycle_job_runs")
    op.drop_table("settlement_queue")
    op.drop_table("job_locks")
    op.drop_table("events")
