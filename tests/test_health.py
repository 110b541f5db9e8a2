"""Tests for the lifecycle HealthMonitor."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from sports_lifecycle.services.health import (
    CRITICAL,
    HEALTHY,
    THRESHOLDS,
    WARNING,
    HealthCheck,
    enqueue_orphaned_final_games,
    overall_status,
    release_stale_processing_locks,
    repair,
    run_health_checks,
    severity,
)

_MOD = "sports_lifecycle.services.health"


def _utc_now() -> datetime:
    return datetime(2026, 3, 14, 18, 0, 0, tzinfo=UTC)


def _make_event(**kwargs) -> SimpleNamespace:
    defaults = {
        "id": 1,
        "league": "NBA",
        "external_id": "401",
        "status_norm": "FINAL",
        "status_raw": "FT",
        "winner_side": "HOME",
        "starts_at": _utc_now() - timedelta(hours=4),
        "home_team": "Celtics",
        "away_team": "Lakers",
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


@pytest.fixture
def quiet_session(mock_session):
    """Every count query returns 0 and every row query returns nothing."""
    mock_session.execute.return_value.scalar_one.return_value = 0
    mock_session.execute.return_value.scalars.return_value.all.return_value = []
    return mock_session


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


class TestSeverity:
    @pytest.mark.parametrize("name", sorted(THRESHOLDS))
    def test_zero_is_healthy(self, name):
        assert severity(name, 0) == HEALTHY

    @pytest.mark.parametrize(
        "name, count, expected",
        [
            ("stuck_live", 1, WARNING),
            ("stuck_live", 5, CRITICAL),
            ("stuck_scheduled", 4, HEALTHY),
            ("stuck_scheduled", 5, WARNING),
            ("final_not_queued", 3, CRITICAL),
            ("final_missing_winner", 4, WARNING),
            ("final_missing_winner", 5, CRITICAL),
            ("queued_too_long", 9, WARNING),
            ("processing_stale", 3, CRITICAL),
        ],
    )
    def test_thresholds(self, name, count, expected):
        assert severity(name, count) == expected

    def test_overall_takes_worst(self):
        checks = {
            "a": HealthCheck("a", 0, HEALTHY, ""),
            "b": HealthCheck("b", 2, WARNING, ""),
        }
        assert overall_status(checks) == WARNING
        checks["c"] = HealthCheck("c", 9, CRITICAL, "")
        assert overall_status(checks) == CRITICAL
        assert overall_status({}) == HEALTHY


# ---------------------------------------------------------------------------
# run_health_checks
# ---------------------------------------------------------------------------


class TestRunHealthChecks:
    def _run(self, session, orphans=(), locks=(), missing=(), include_items=True):
        with (
            patch(f"{_MOD}.queue.count_unqueued_settleable_events", return_value=len(orphans)),
            patch(f"{_MOD}.queue.find_unqueued_settleable_events", return_value=list(orphans)),
            patch(f"{_MOD}.queue.count_final_events_without_winner", return_value=len(missing)),
            patch(f"{_MOD}.queue.find_final_events_without_winner", return_value=list(missing)),
            patch(f"{_MOD}.queue.get_queue_stats", return_value={"QUEUED": 0}),
            patch(f"{_MOD}.lock_store.list_locks", return_value=list(locks)),
        ):
            return run_health_checks(session, include_items=include_items, now=_utc_now())

    def test_clean_system_is_healthy(self, quiet_session):
        report = self._run(quiet_session)
        assert report.status == HEALTHY
        assert set(report.checks) == set(THRESHOLDS)
        assert report.summary["total_issues"] == 0
        assert report.stats == {"QUEUED": 0}

    def test_orphaned_final_games_reported(self, quiet_session):
        orphans = [_make_event(id=i) for i in (1, 2, 3)]
        report = self._run(quiet_session, orphans=orphans)
        check = report.checks["final_not_queued"]
        assert check.count == 3
        assert check.status == CRITICAL
        assert report.status == CRITICAL
        assert [e["event_id"] for e in report.orphaned_events] == [1, 2, 3]

    def test_final_without_winner_reported(self, quiet_session):
        scoreless = [_make_event(id=7, winner_side=None, status_raw="AOT")]
        report = self._run(quiet_session, orphans=[_make_event(id=1)], missing=scoreless)

        check = report.checks["final_missing_winner"]
        assert check.count == 1
        assert check.status == WARNING
        assert check.items[0]["event_id"] == 7
        assert [e["event_id"] for e in report.orphaned_events] == [1, 7]
        assert report.summary["total_issues"] == 2

    def test_expired_job_locks_listed(self, quiet_session):
        locks = [
            SimpleNamespace(
                job_name="sync",
                locked_by="worker-dead",
                locked_at=_utc_now() - timedelta(minutes=30),
                expires_at=_utc_now() - timedelta(minutes=25),
            ),
            SimpleNamespace(
                job_name="settle",
                locked_by="worker-live",
                locked_at=_utc_now() - timedelta(minutes=1),
                expires_at=_utc_now() + timedelta(minutes=4),
            ),
        ]
        report = self._run(quiet_session, locks=locks)
        assert [lock["job_name"] for lock in report.stale_locks] == ["sync"]
        assert report.checks["expired_job_locks"].status == WARNING

    def test_items_omitted_on_request(self, quiet_session):
        report = self._run(quiet_session, orphans=[_make_event()], include_items=False)
        data = report.to_dict()
        assert "items" not in data["checks"]["final_not_queued"]
        assert data["summary"]["warning_count"] == 1


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------


class TestRepairs:
    def test_release_stale_processing_uses_threshold(self, mock_session):
        with patch(f"{_MOD}.queue.release_stale_processing", return_value=[4, 9]) as release:
            released = release_stale_processing_locks(mock_session, now=_utc_now())
        assert released == 2
        kwargs = release.call_args.kwargs
        assert kwargs["older_than"] == _utc_now() - timedelta(minutes=10)
        mock_session.commit.assert_called_once()

    def test_enqueue_orphans_isolates_failures(self, mock_session):
        events = [_make_event(id=1), _make_event(id=2), _make_event(id=3)]

        def enqueue(session, event):
            if event.id == 2:
                raise IntegrityError("INSERT", {}, Exception("fk violation"))
            return True

        with (
            patch(f"{_MOD}.queue.find_unqueued_settleable_events", return_value=events),
            patch(f"{_MOD}.enqueue_event_settlement", side_effect=enqueue),
        ):
            assert enqueue_orphaned_final_games(mock_session, limit=10) == 2
        mock_session.commit.assert_called_once()

    def test_repair_runs_every_remediation(self):
        session = MagicMock()
        with (
            patch(f"{_MOD}.release_stale_processing_locks", return_value=1) as release,
            patch(f"{_MOD}.enqueue_orphaned_final_games", return_value=2) as orphans,
            patch(f"{_MOD}.lock_store.delete_expired_locks", return_value=3),
        ):
            result = repair(session)
        release.assert_called_once_with(session)
        orphans.assert_called_once_with(session)
        assert result == {
            "released_processing": 1,
            "enqueued_orphans": 2,
            "expired_locks_removed": 3,
        }
