"""Phase run history.

Every lifecycle phase that actually runs (not skipped on its job lock)
leaves one ``lifecycle_job_runs`` row: opened as ``running`` before the
phase body, closed with its summary counters afterwards. Rows left
``running`` by a killed worker are closed as ``interrupted`` at startup
and shutdown.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator

from ..config import settings
from ..db import db_models, get_session
from ..logging import logger
from ..utils.datetime_utils import now_utc

RUNNING = "running"
SUCCESS = "success"
SKIPPED = "skipped"
ERROR = "error"
INTERRUPTED = "interrupted"

ERROR_SUMMARY_MAX = 500
INTERRUPTED_SUMMARY = "Run was interrupted (worker shutdown or container killed)"

Run = db_models.LifecycleJobRun


def _close_run(run: Any, status: str, finished_at: datetime, error_summary: str | None) -> None:
    run.status = status
    run.finished_at = finished_at
    run.duration_seconds = (finished_at - run.started_at).total_seconds()
    run.error_summary = error_summary


def start_job_run(
    phase: str,
    leagues: Iterable[str] = (),
    celery_task_id: str | None = None,
) -> int:
    """Open a ``running`` row for *phase* and return its id."""
    run = Run(
        phase=phase,
        leagues=[code.upper() for code in leagues],
        status=RUNNING,
        worker_id=settings.worker_id,
        started_at=now_utc(),
        celery_task_id=celery_task_id,
    )
    with get_session() as session:
        session.add(run)
        session.flush()
        run_id = int(run.id)
    logger.info("job_run_started", run_id=run_id, phase=phase, leagues=run.leagues)
    return run_id


def complete_job_run(
    run_id: int,
    status: str,
    error_summary: str | None = None,
    summary_data: dict[str, Any] | None = None,
) -> None:
    """Close run *run_id* with *status*; a vanished row is logged, not raised."""
    with get_session() as session:
        run = session.get(Run, run_id)
        if run is None:
            logger.error("job_run_missing", run_id=run_id, status=status)
            return
        _close_run(run, status, now_utc(), error_summary)
        if summary_data is not None:
            run.summary_data = summary_data
        session.flush()
        logger.info(
            "job_run_completed",
            run_id=run_id,
            phase=run.phase,
            status=status,
            duration_seconds=run.duration_seconds,
        )


class JobRunTracker:
    """Counters and final status collected while a phase runs."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        self.summary_data: dict[str, Any] = {}
        self.status = SUCCESS

    def set(self, key: str, value: Any) -> None:
        self.summary_data[key] = value

    def update(self, values: dict[str, Any]) -> None:
        self.summary_data.update(values)

    def increment(self, key: str, amount: int = 1) -> None:
        self.summary_data[key] = self.summary_data.get(key, 0) + amount

    def mark_skipped(self, reason: str) -> None:
        self.status = SKIPPED
        self.set("skipped_reason", reason)

    def finish(self, exc: BaseException | None = None) -> None:
        if exc is None:
            complete_job_run(self.run_id, status=self.status, summary_data=self.summary_data or None)
        else:
            complete_job_run(
                self.run_id,
                status=ERROR,
                error_summary=str(exc)[:ERROR_SUMMARY_MAX],
                summary_data=self.summary_data or None,
            )


def _get_current_celery_task_id() -> str | None:
    from celery import current_task

    request = getattr(current_task, "request", None)
    task_id = getattr(request, "id", None)
    return str(task_id) if task_id else None


@contextmanager
def track_job_run(
    phase: str,
    leagues: Iterable[str] = (),
) -> Generator[JobRunTracker, None, None]:
    """Record one run of *phase* around the ``with`` body.

        with track_job_run("sync", ["NFL"]) as tracker:
            tracker.set("total_upserted", 12)

    The body's exception closes the run as ``error`` and is re-raised.
    """
    tracker = JobRunTracker(
        start_job_run(phase, leagues, celery_task_id=_get_current_celery_task_id())
    )
    try:
        yield tracker
    except Exception as exc:
        tracker.finish(exc)
        raise
    tracker.finish()


def mark_stale_runs_interrupted(older_than: timedelta | None = None) -> int:
    """Close ``running`` rows as ``interrupted``; returns how many.

    With *older_than* None every running row is closed, which is only
    right when no other worker can be mid-phase.
    """
    now = now_utc()
    with get_session() as session:
        query = session.query(Run).filter(Run.status == RUNNING)
        if older_than is not None:
            query = query.filter(Run.started_at < now - older_than)
        stale_runs = query.all()
        for run in stale_runs:
            _close_run(run, INTERRUPTED, now, INTERRUPTED_SUMMARY)
            logger.warning(
                "marking_stale_run_interrupted",
                run_id=run.id,
                phase=run.phase,
                started_at=str(run.started_at),
            )
    if stale_runs:
        logger.info("stale_runs_marked_interrupted", count=len(stale_runs))
    return len(stale_runs)


def _run_to_dict(run: Any) -> dict[str, Any]:
    return {
        "id": run.id,
        "phase": run.phase,
        "status": run.status,
        "worker_id": run.worker_id,
        "started_at": run.started_at.isoformat(),
        "duration_seconds": run.duration_seconds,
        "error_summary": run.error_summary,
    }


def recent_job_runs(phase: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
    """Newest runs first, optionally for one phase."""
    with get_session() as session:
        query = session.query(Run)
        if phase:
            query = query.filter(Run.phase == phase)
        return [_run_to_dict(run) for run in query.order_by(Run.started_at.desc()).limit(limit)]
