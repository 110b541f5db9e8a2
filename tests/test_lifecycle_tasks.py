"""Tests for the lifecycle Celery tasks."""

from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from sports_lifecycle.config import settings
from sports_lifecycle.jobs.lifecycle_tasks import (
    VALID_JOBS,
    execute_lifecycle_job,
    retry_failed_settlements,
    run_lifecycle_health,
    run_lifecycle_job,
    run_scheduled_settle,
    run_scheduled_sync,
)
from sports_lifecycle.services.job_lock import LockResult
from sports_lifecycle.services.orchestrator import FullCycleResult, PhaseOutcome

_MOD = "sports_lifecycle.jobs.lifecycle_tasks"


@contextmanager
def _fake_phases(limits=None):
    yield {name: MagicMock(name=name) for name in ("discover", "sync", "finalize", "settle")}


@contextmanager
def _fake_session():
    yield MagicMock()


class TestExecuteLifecycleJob:
    def test_valid_jobs(self):
        assert VALID_JOBS == ("discover", "sync", "finalize", "settle", "full")

    def test_unknown_job_rejected(self):
        with pytest.raises(ValueError, match="Unknown lifecycle job"):
            execute_lifecycle_job("backfill")

    def test_single_phase_summary(self):
        outcome = PhaseOutcome(name="sync", result={"total_upserted": 2}, duration_seconds=1.5)
        with (
            patch(f"{_MOD}._lifecycle_phases", side_effect=_fake_phases),
            patch(f"{_MOD}.run_phase", return_value=outcome) as run_phase,
        ):
            summary = execute_lifecycle_job("SYNC", overrides={"sync_max_games": 5})

        assert run_phase.call_args.kwargs == {"overrides": {"sync_max_games": 5}, "skip_lock": False}
        assert summary["job"] == "sync"
        assert summary["skipped"] == []
        assert summary["durations"] == {"sync": 1.5}
        assert summary["result"] == {"total_upserted": 2}

    def test_skipped_phase_listed(self):
        outcome = PhaseOutcome(name="settle", skipped=True, reason="locked")
        with (
            patch(f"{_MOD}._lifecycle_phases", side_effect=_fake_phases),
            patch(f"{_MOD}.run_phase", return_value=outcome),
        ):
            summary = execute_lifecycle_job("settle")
        assert summary["skipped"] == ["settle"]

    def test_full_cycle(self):
        with (
            patch(f"{_MOD}._lifecycle_phases", side_effect=_fake_phases),
            patch(f"{_MOD}.run_full_cycle", return_value=FullCycleResult()) as full,
        ):
            summary = execute_lifecycle_job("full", skip_lock=True)
        assert full.call_args.kwargs["skip_lock"] is True
        assert summary["job"] == "full"


class TestTasks:
    def test_manual_task_passes_overrides(self):
        with patch(f"{_MOD}.execute_lifecycle_job", return_value={"job": "discover"}) as execute:
            run_lifecycle_job("discover", overrides={"leagues": ["NBA"]}, skip_lock=True)
        execute.assert_called_once_with("discover", overrides={"leagues": ["NBA"]}, skip_lock=True)

    @pytest.mark.parametrize(
        "task, job",
        [(run_scheduled_sync, "sync"), (run_scheduled_settle, "settle")],
    )
    def test_scheduled_tasks_use_scheduled_limits(self, task, job):
        with patch(f"{_MOD}.execute_lifecycle_job", return_value={}) as execute:
            task()
        execute.assert_called_once_with(job, limits=settings.scheduled_limits)

    def test_health_without_repair(self):
        report = MagicMock()
        report.to_dict.return_value = {"status": "healthy"}
        with (
            patch(f"{_MOD}.get_session", side_effect=_fake_session),
            patch(f"{_MOD}.run_health_checks", return_value=report),
            patch(f"{_MOD}.repair") as repair,
        ):
            result = run_lifecycle_health()
        repair.assert_not_called()
        assert result == {"health": {"status": "healthy"}}

    def test_health_with_repair_refreshes_stuck_events(self):
        report = MagicMock()
        report.to_dict.return_value = {"status": "warning"}
        with (
            patch(f"{_MOD}.get_session", side_effect=_fake_session),
            patch(f"{_MOD}.run_health_checks", return_value=report),
            patch(f"{_MOD}.repair", return_value={"released_processing": 1}),
            patch(f"{_MOD}._refresh_stuck", return_value={"candidates": 0}) as refresh,
        ):
            result = run_lifecycle_health(repair_issues=True)
        refresh.assert_called_once()
        assert result["repair"] == {"released_processing": 1}
        assert result["stuck_refresh"] == {"candidates": 0}

    def test_stuck_refresh_skipped_when_sync_running(self):
        from sports_lifecycle.jobs.lifecycle_tasks import _refresh_stuck

        @contextmanager
        def held(job_name, ttl_minutes=None, bypass=False, meta=None):
            assert job_name == "sync"
            yield LockResult(acquired=False)

        with (
            patch(f"{_MOD}.job_lock", side_effect=held),
            patch(f"{_MOD}.ApiSportsClient") as client,
        ):
            assert _refresh_stuck() == {"skipped": True, "reason": "locked"}
        client.assert_not_called()

    def test_retry_failed_settlements(self):
        with (
            patch(f"{_MOD}.get_session", side_effect=_fake_session),
            patch(f"{_MOD}.retry_failed_items", return_value=3) as retry,
        ):
            assert retry_failed_settlements(limit=10) == {"reset": 3}
        assert retry.call_args.args[1] == 10
