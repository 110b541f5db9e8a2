"""Store-backed job locks for lifecycle phases.

Overlapping invocations of one phase (beat schedule plus a manual run, or
a slow run still going when the next tick fires) coordinate through the
``job_locks`` table. Every call opens its own short transaction so the lock
row is visible to other workers as soon as the call returns.

Unlike a cache lock, a store error here fails closed: the caller is told
the lock was not acquired and skips the phase.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..db import get_session
from ..logging import logger
from ..persistence import job_locks as lock_store
from ..utils.datetime_utils import now_utc


@dataclass(frozen=True)
class LockInfo:
    job_name: str
    locked_by: str
    locked_at: datetime
    expires_at: datetime
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "meta": self.meta,
        }


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    existing_lock: LockInfo | None = None
    error: str | None = None
    bypassed: bool = False


def _to_info(row: Any) -> LockInfo:
    return LockInfo(
        job_name=row.job_name,
        locked_by=row.locked_by,
        locked_at=row.locked_at,
        expires_at=row.expires_at,
        meta=dict(row.meta or {}),
    )


def acquire_job_lock(
    job_name: str,
    ttl_minutes: int | None = None,
    worker_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> LockResult:
    """Try to take the lock for *job_name*.

    Expired rows for the name are deleted first, then a single
    insert-if-absent decides the winner. On contention the current
    holder is returned in ``existing_lock``.
    """
    ttl = ttl_minutes or settings.lifecycle_config.lock_ttl_minutes
    holder = worker_id or settings.worker_id
    try:
        with get_session() as session:
            now = now_utc()
            lock_store.delete_expired_locks(session, now, job_name=job_name)
            created = lock_store.insert_lock(
                session,
                job_name=job_name,
                locked_by=holder,
                locked_at=now,
                expires_at=now + timedelta(minutes=ttl),
                meta=meta,
            )
            if created:
                logger.info("job_lock_acquired", job=job_name, worker=holder, ttl_minutes=ttl)
                return LockResult(acquired=True)

            existing = lock_store.get_lock(session, job_name)
            info = _to_info(existing) if existing is not None else None
            logger.info(
                "job_lock_busy",
                job=job_name,
                worker=holder,
                held_by=info.locked_by if info else None,
                expires_at=info.expires_at.isoformat() if info else None,
            )
            return LockResult(acquired=False, existing_lock=info)
    except SQLAlchemyError as exc:
        logger.error("job_lock_acquire_failed", job=job_name, worker=holder, error=str(exc))
        return LockResult(acquired=False, error=str(exc))


def release_job_lock(job_name: str) -> bool:
    """Delete the lock row. Idempotent; a store error leaves it to expire."""
    try:
        with get_session() as session:
            removed = lock_store.delete_lock(session, job_name)
        logger.info("job_lock_released", job=job_name, removed=removed)
        return True
    except SQLAlchemyError as exc:
        logger.warning("job_lock_release_failed", job=job_name, error=str(exc))
        return False


def cleanup_expired_locks() -> int:
    """Delete every expired lock row. Returns the number removed."""
    with get_session() as session:
        removed = lock_store.delete_expired_locks(session, now_utc())
    if removed:
        logger.info("job_locks_expired_cleaned", removed=removed)
    return removed


def extend_job_lock(job_name: str, minutes: int, worker_id: str | None = None) -> bool:
    """Extend a lock this worker holds. False if it expired or belongs to another worker."""
    holder = worker_id or settings.worker_id
    try:
        with get_session() as session:
            now = now_utc()
            extended = lock_store.extend_lock(
                session,
                job_name=job_name,
                locked_by=holder,
                expires_at=now + timedelta(minutes=minutes),
                now=now,
            )
    except SQLAlchemyError as exc:
        logger.warning("job_lock_extend_failed", job=job_name, error=str(exc))
        return False
    logger.info("job_lock_extended", job=job_name, worker=holder, minutes=minutes, extended=extended)
    return extended


def get_job_locks() -> list[LockInfo]:
    with get_session() as session:
        return [_to_info(row) for row in lock_store.list_locks(session)]


@contextmanager
def job_lock(
    job_name: str,
    ttl_minutes: int | None = None,
    bypass: bool = False,
    meta: dict[str, Any] | None = None,
) -> Iterator[LockResult]:
    """Hold the job lock for the duration of the block.

    Callers must check ``result.acquired`` before doing work. With
    *bypass* (manual admin runs) no lock is taken or released.
    """
    if bypass:
        logger.info("job_lock_bypassed", job=job_name)
        yield LockResult(acquired=True, bypassed=True)
        return

    result = acquire_job_lock(job_name, ttl_minutes=ttl_minutes, meta=meta)
    try:
        yield result
    finally:
        if result.acquired:
            release_job_lock(job_name)
