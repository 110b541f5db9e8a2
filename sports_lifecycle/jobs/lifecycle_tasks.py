"""Celery tasks for the game lifecycle phases.

Every task opens the provider client and settlement executor it needs,
runs through the orchestrator (so locking and run tracking are uniform)
and returns a JSON-safe summary. Lock contention is a normal outcome:
the phase shows up under ``skipped`` and the task still succeeds.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from celery import shared_task

from ..config import settings
from ..db import get_session
from ..logging import logger
from ..models.enums import JobName
from ..services.health import repair, run_health_checks
from ..services.job_lock import job_lock
from ..services.orchestrator import (
    FULL_CYCLE,
    BatchLimits,
    LifecyclePhase,
    build_phases,
    run_full_cycle,
    run_phase,
)
from ..services.settlement import retry_failed_items
from ..services.settlement_executor import HttpSettlementExecutor
from ..services.sync_engine import refresh_stuck_events
from ..sources.api_sports import ApiSportsClient

VALID_JOBS = tuple(job.value for job in JobName) + (FULL_CYCLE,)


@contextmanager
def _lifecycle_phases(limits: BatchLimits | None = None) -> Iterator[dict[str, LifecyclePhase]]:
    executor = HttpSettlementExecutor()
    try:
        with ApiSportsClient() as source:
            yield build_phases(source, executor, limits)
    finally:
        executor.close()


def execute_lifecycle_job(
    job: str,
    overrides: dict[str, Any] | None = None,
    skip_lock: bool = False,
    limits: BatchLimits | None = None,
) -> dict[str, Any]:
    """Run one phase or the full cycle. Shared by the tasks and the CLI."""
    job = job.lower()
    if job not in VALID_JOBS:
        raise ValueError(f"Unknown lifecycle job '{job}'. Expected one of: {', '.join(VALID_JOBS)}")

    with _lifecycle_phases(limits) as phases:
        if job == FULL_CYCLE:
            return run_full_cycle(phases, overrides=overrides, skip_lock=skip_lock).to_dict()
        outcome = run_phase(phases[job], overrides=overrides, skip_lock=skip_lock)

    summary = outcome.to_dict()
    summary["job"] = job
    summary["skipped"] = [job] if outcome.skipped else []
    summary["durations"] = {job: summary["duration_seconds"]}
    return summary


@shared_task(name="run_lifecycle_job")
def run_lifecycle_job(
    job: str,
    overrides: dict[str, Any] | None = None,
    skip_lock: bool = False,
) -> dict[str, Any]:
    """Manual/admin trigger: run *job* (discover|sync|finalize|settle|full)."""
    logger.info("lifecycle_job_requested", job=job, overrides=overrides, skip_lock=skip_lock)
    return execute_lifecycle_job(job, overrides=overrides, skip_lock=skip_lock)


def _scheduled(job: str) -> dict[str, Any]:
    return execute_lifecycle_job(job, limits=settings.scheduled_limits)


@shared_task(name="run_scheduled_discover")
def run_scheduled_discover() -> dict[str, Any]:
    return _scheduled(JobName.DISCOVER.value)


@shared_task(name="run_scheduled_sync")
def run_scheduled_sync() -> dict[str, Any]:
    return _scheduled(JobName.SYNC.value)


@shared_task(name="run_scheduled_finalize")
def run_scheduled_finalize() -> dict[str, Any]:
    return _scheduled(JobName.FINALIZE.value)


@shared_task(name="run_scheduled_settle")
def run_scheduled_settle() -> dict[str, Any]:
    return _scheduled(JobName.SETTLE.value)


def _refresh_stuck() -> dict[str, Any]:
    """Re-check long-running events against the provider under the sync lock."""
    with job_lock(JobName.SYNC.value, meta={"phase": "stuck_refresh"}) as lock:
        if not lock.acquired:
            return {"skipped": True, "reason": "locked"}
        with ApiSportsClient() as source, get_session() as session:
            return refresh_stuck_events(session, source).to_dict()


@shared_task(name="run_lifecycle_health")
def run_lifecycle_health(repair_issues: bool = False, include_items: bool = False) -> dict[str, Any]:
    """Run the health checks; with *repair_issues* also apply the remediations."""
    result: dict[str, Any] = {}
    if repair_issues:
        with get_session() as session:
            result["repair"] = repair(session)
        result["stuck_refresh"] = _refresh_stuck()

    with get_session() as session:
        report = run_health_checks(session, include_items=include_items)
    result["health"] = report.to_dict()
    return result


@shared_task(name="retry_failed_settlements")
def retry_failed_settlements(limit: int | None = None) -> dict[str, Any]:
    """Give FAILED settlement items one more attempt."""
    with get_session() as session:
        reset = retry_failed_items(session, limit)
    return {"reset": reset}
