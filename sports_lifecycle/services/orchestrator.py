"""Lifecycle orchestrator: run phases under their job locks.

Every phase is a ``LifecyclePhase`` with the same shape, so a single
phase run and the full cycle (discover → sync → finalize → settle) share
one code path. Each phase takes and releases its own lock; a phase whose
lock is held elsewhere is reported as skipped and the cycle moves on.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_session
from ..logging import logger
from ..models.enums import JobName
from ..sources.base import EventSource
from .discovery import discover_events
from .finalize import enqueue_finalized
from .job_lock import cleanup_expired_locks, job_lock
from .job_runs import track_job_run
from .settlement import SettlementProcessor
from .settlement_executor import SettlementExecutor
from .sync_engine import sync_events

PhaseRun = Callable[[Session, dict[str, Any]], dict[str, Any]]

FULL_CYCLE = "full"

# Result keys folded into the full-cycle totals, per phase
_TOTAL_KEYS: dict[str, dict[str, str]] = {
    JobName.DISCOVER.value: {"fetched": "fetched", "upserted": "upserted"},
    JobName.SYNC.value: {
        "fetched": "total_fetched",
        "upserted": "total_upserted",
        "finalized": "total_finalized",
        "enqueued": "total_enqueued",
    },
    JobName.FINALIZE.value: {"finalized": "total_finalized", "enqueued": "total_enqueued"},
    JobName.SETTLE.value: {"settled": "succeeded"},
}


class BatchLimits(Protocol):
    max_games_per_league: int
    sync_max_games: int
    finalize_max_games: int
    settle_max_items: int


@dataclass(frozen=True)
class LifecyclePhase:
    name: str
    lock_name: str
    run: PhaseRun


@dataclass
class PhaseOutcome:
    name: str
    skipped: bool = False
    reason: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None
    held_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phase": self.name,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 3),
            "result": self.result,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.held_by:
            data["held_by"] = self.held_by
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class FullCycleResult:
    phases: list[PhaseOutcome] = field(default_factory=list)
    expired_locks_removed: int = 0
    duration_seconds: float = 0.0

    @property
    def skipped(self) -> list[str]:
        return [outcome.name for outcome in self.phases if outcome.skipped]

    @property
    def errors(self) -> list[str]:
        errors: list[str] = []
        for outcome in self.phases:
            if outcome.error:
                errors.append(f"{outcome.name}: {outcome.error}")
            errors.extend(f"{outcome.name}: {e}" for e in outcome.result.get("errors", []))
        return errors

    @property
    def totals(self) -> dict[str, int]:
        totals = {"fetched": 0, "upserted": 0, "finalized": 0, "enqueued": 0, "settled": 0}
        for outcome in self.phases:
            for total_key, result_key in _TOTAL_KEYS.get(outcome.name, {}).items():
                totals[total_key] += int(outcome.result.get(result_key, 0) or 0)
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": FULL_CYCLE,
            "totals": self.totals,
            "skipped": self.skipped,
            "errors": self.errors,
            "expired_locks_removed": self.expired_locks_removed,
            "duration_seconds": round(self.duration_seconds, 3),
            "durations": {o.name: round(o.duration_seconds, 3) for o in self.phases},
            "phases": {o.name: o.to_dict() for o in self.phases},
        }


def _limit(overrides: dict[str, Any], key: str, default: int) -> int:
    value = overrides.get(key)
    return int(value) if value else default


def build_phases(
    source: EventSource,
    executor: SettlementExecutor,
    limits: BatchLimits | None = None,
) -> dict[str, LifecyclePhase]:
    """The four lifecycle phases, in run order, keyed by job name."""
    limits = limits or settings.lifecycle_config

    def discover(session: Session, overrides: dict[str, Any]) -> dict[str, Any]:
        return discover_events(
            session,
            source,
            max_per_league=_limit(overrides, "max_games_per_league", limits.max_games_per_league),
            leagues=overrides.get("leagues"),
        ).to_dict()

    def sync(session: Session, overrides: dict[str, Any]) -> dict[str, Any]:
        return sync_events(
            session,
            source,
            max_games=_limit(overrides, "sync_max_games", limits.sync_max_games),
        ).to_dict()

    def finalize(session: Session, overrides: dict[str, Any]) -> dict[str, Any]:
        return enqueue_finalized(
            session,
            max_games=_limit(overrides, "finalize_max_games", limits.finalize_max_games),
        ).to_dict()

    def settle(session: Session, overrides: dict[str, Any]) -> dict[str, Any]:
        processor = SettlementProcessor(executor)
        return processor.process_all(
            session,
            max_items=_limit(overrides, "settle_max_items", limits.settle_max_items),
        ).to_dict()

    runs: dict[str, PhaseRun] = {
        JobName.DISCOVER.value: discover,
        JobName.SYNC.value: sync,
        JobName.FINALIZE.value: finalize,
        JobName.SETTLE.value: settle,
    }
    return {
        name: LifecyclePhase(name=name, lock_name=name, run=run)
        for name, run in runs.items()
    }


def run_phase(
    phase: LifecyclePhase,
    overrides: dict[str, Any] | None = None,
    skip_lock: bool = False,
) -> PhaseOutcome:
    """Run one phase under its lock and record it as a job run."""
    overrides = overrides or {}
    started = time.monotonic()
    leagues: Iterable[str] = overrides.get("leagues") or ()

    with job_lock(phase.lock_name, bypass=skip_lock, meta={"phase": phase.name}) as lock:
        if not lock.acquired:
            outcome = PhaseOutcome(
                name=phase.name,
                skipped=True,
                reason="lock_error" if lock.error else "locked",
                error=lock.error,
                held_by=lock.existing_lock.locked_by if lock.existing_lock else None,
            )
            logger.info(
                "lifecycle_phase_skipped",
                phase=phase.name,
                reason=outcome.reason,
                held_by=outcome.held_by,
            )
            return outcome

        outcome = PhaseOutcome(name=phase.name)
        try:
            with track_job_run(phase.name, leagues) as tracker:
                with get_session() as session:
                    outcome.result = phase.run(session, overrides)
                tracker.update({k: v for k, v in outcome.result.items() if k != "items"})
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:
            # Recorded on the outcome; the next phase still runs
            outcome.error = f"{type(exc).__name__}: {exc}"
            logger.exception("lifecycle_phase_failed", phase=phase.name, error=str(exc))

    outcome.duration_seconds = time.monotonic() - started
    logger.info(
        "lifecycle_phase_complete",
        phase=phase.name,
        duration_seconds=round(outcome.duration_seconds, 3),
        bypassed_lock=skip_lock,
        failed=outcome.error is not None,
    )
    return outcome


def run_full_cycle(
    phases: dict[str, LifecyclePhase],
    overrides: dict[str, Any] | None = None,
    skip_lock: bool = False,
) -> FullCycleResult:
    """Clean up expired locks, then run every phase in order."""
    started = time.monotonic()
    result = FullCycleResult()
    try:
        result.expired_locks_removed = cleanup_expired_locks()
    except SQLAlchemyError as exc:
        logger.warning("lifecycle_lock_cleanup_failed", error=str(exc))

    for phase in phases.values():
        result.phases.append(run_phase(phase, overrides=overrides, skip_lock=skip_lock))

    result.duration_seconds = time.monotonic() - started
    logger.info(
        "lifecycle_full_cycle_complete",
        skipped=result.skipped,
        errors=len(result.errors),
        duration_seconds=round(result.duration_seconds, 3),
        **result.totals,
    )
    return result
