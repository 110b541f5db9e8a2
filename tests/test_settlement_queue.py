"""Tests for settlement queue persistence helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

from sqlalchemy.dialects import postgresql

from sports_lifecycle.models.enums import SettlementStatus
from sports_lifecycle.persistence.settlement_queue import (
    claim_next_item,
    enqueue_settlement,
    mark_item_failed,
    mark_item_settled,
    release_stale_processing,
    reset_failed_item,
    settlement_outcome,
)
from sports_lifecycle.utils.retry import RetryPolicy


def _utc_now() -> datetime:
    return datetime(2026, 3, 14, 18, 0, 0, tzinfo=UTC)


def _make_event(**kwargs) -> SimpleNamespace:
    return SimpleNamespace(
        id=kwargs.get("id", 1),
        league=kwargs.get("league", "NBA"),
        provider=kwargs.get("provider", "api-sports"),
        external_id=kwargs.get("external_id", "401"),
        status_norm=kwargs.get("status_norm", "FINAL"),
        winner_side=kwargs.get("winner_side", "HOME"),
    )


def _make_item(**kwargs) -> SimpleNamespace:
    return SimpleNamespace(
        id=kwargs.get("id", 10),
        event_id=kwargs.get("event_id", 1),
        attempts=kwargs.get("attempts", 0),
        next_attempt_at=kwargs.get("next_attempt_at", _utc_now()),
    )


def _session_with_rowcount(rowcount: int) -> MagicMock:
    session = MagicMock()
    session.execute.return_value = MagicMock(rowcount=rowcount)
    return session


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=60, factor=5, max_delay_seconds=3600)


class TestSettlementOutcome:
    def test_final_uses_winner(self):
        assert settlement_outcome(_make_event(winner_side="AWAY")) == "AWAY"

    def test_canceled_voids(self):
        assert settlement_outcome(_make_event(status_norm="CANCELED", winner_side=None)) == "CANCELED"


class TestEnqueueSettlement:
    def test_insert_returns_true(self):
        session = MagicMock()
        session.execute.return_value.scalar_one_or_none.return_value = 55
        assert enqueue_settlement(session, _make_event(), now=_utc_now()) is True

    def test_conflict_returns_false(self):
        session = MagicMock()
        session.execute.return_value.scalar_one_or_none.return_value = None
        assert enqueue_settlement(session, _make_event(), now=_utc_now()) is False

    def test_statement_is_conflict_safe(self):
        session = MagicMock()
        session.execute.return_value.scalar_one_or_none.return_value = None
        enqueue_settlement(session, _make_event(), now=_utc_now())
        sql = _compiled(session.execute.call_args.args[0])
        assert "ON CONFLICT (event_id) DO NOTHING" in sql
        assert "RETURNING" in sql


class TestClaimNextItem:
    def test_claim_is_single_update_with_skip_locked(self):
        session = MagicMock()
        session.scalars.return_value.one_or_none.return_value = None
        assert claim_next_item(session, "worker-a", now=_utc_now()) is None
        sql = _compiled(session.scalars.call_args.args[0])
        assert sql.startswith("UPDATE settlement_queue")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY settlement_queue.created_at ASC, settlement_queue.id ASC" in sql
        assert "RETURNING" in sql


class TestMarkItemSettled:
    def test_holder_settles(self):
        assert mark_item_settled(_session_with_rowcount(1), 10, "worker-a", now=_utc_now()) is True

    def test_lost_claim(self):
        assert mark_item_settled(_session_with_rowcount(0), 10, "worker-a", now=_utc_now()) is False


class TestMarkItemFailed:
    def test_first_failure_requeues_with_backoff(self):
        record = mark_item_failed(
            _session_with_rowcount(1), _make_item(attempts=0), "w", "boom", _POLICY, now=_utc_now()
        )
        assert record.status == SettlementStatus.QUEUED
        assert record.attempts == 1
        assert record.next_attempt_at == _utc_now() + timedelta(seconds=60)

    def test_backoff_never_moves_backwards(self):
        far = _utc_now() + timedelta(hours=5)
        record = mark_item_failed(
            _session_with_rowcount(1),
            _make_item(attempts=1, next_attempt_at=far),
            "w",
            "boom",
            _POLICY,
            now=_utc_now(),
        )
        assert record.next_attempt_at == far

    def test_exhausted_parks_failed(self):
        previous = _utc_now() - timedelta(minutes=1)
        record = mark_item_failed(
            _session_with_rowcount(1),
            _make_item(attempts=2, next_attempt_at=previous),
            "w",
            "boom",
            _POLICY,
            now=_utc_now(),
        )
        assert record.status == SettlementStatus.FAILED
        assert record.attempts == 3
        assert record.next_attempt_at == _utc_now()

    def test_lost_claim_returns_none(self):
        record = mark_item_failed(
            _session_with_rowcount(0), _make_item(), "w", "boom", _POLICY, now=_utc_now()
        )
        assert record is None

    def test_long_errors_truncated(self):
        session = _session_with_rowcount(1)
        mark_item_failed(session, _make_item(), "w", "x" * 5000, _POLICY, now=_utc_now())
        stmt = session.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert len(params["last_error"]) == 1000


class TestResetAndRelease:
    def test_reset_only_failed(self):
        session = _session_with_rowcount(1)
        assert reset_failed_item(session, 10, now=_utc_now()) is True
        sql = _compiled(session.execute.call_args.args[0])
        assert "greatest" in sql.lower()

    def test_reset_non_failed(self):
        assert reset_failed_item(_session_with_rowcount(0), 10, now=_utc_now()) is False

    def test_release_returns_ids(self):
        session = MagicMock()
        session.execute.return_value.scalars.return_value.all.return_value = [3, 4]
        assert release_stale_processing(session, older_than=_utc_now(), now=_utc_now()) == [3, 4]
        sql = _compiled(session.execute.call_args.args[0])
        assert "attempts" not in sql.split("SET", 1)[1].split("WHERE", 1)[0]
