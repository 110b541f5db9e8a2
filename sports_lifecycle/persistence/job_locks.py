"""Job lock rows: insert-if-absent mutual exclusion keyed by job name."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from ..db import db_models


def delete_expired_locks(session: Session, now: datetime, job_name: str | None = None) -> int:
    """Delete rows whose expires_at has passed. Returns the number removed."""
    model = db_models.JobLock
    stmt = delete(model).where(model.expires_at < now)
    if job_name is not None:
        stmt = stmt.where(model.job_name == job_name)
    result = session.execute(stmt.execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


def insert_lock(
    session: Session,
    job_name: str,
    locked_by: str,
    locked_at: datetime,
    expires_at: datetime,
    meta: dict[str, Any] | None = None,
) -> bool:
    """Single-statement insert-if-absent. True when this call created the row."""
    model = db_models.JobLock
    stmt = (
        insert(model)
        .values(
            job_name=job_name,
            locked_by=locked_by,
            locked_at=locked_at,
            expires_at=expires_at,
            meta=meta or {},
        )
        .on_conflict_do_nothing(index_elements=[model.job_name])
        .returning(model.job_name)
    )
    return session.execute(stmt).scalar_one_or_none() is not None


def get_lock(session: Session, job_name: str) -> db_models.JobLock | None:
    return session.get(db_models.JobLock, job_name)


def delete_lock(session: Session, job_name: str) -> int:
    model = db_models.JobLock
    result = session.execute(
        delete(model)
        .where(model.job_name == job_name)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def extend_lock(
    session: Session,
    job_name: str,
    locked_by: str,
    expires_at: datetime,
    now: datetime,
) -> bool:
    """Push expiry forward, only for the current holder of an unexpired lock."""
    model = db_models.JobLock
    result = session.execute(
        update(model)
        .where(
            model.job_name == job_name,
            model.locked_by == locked_by,
            model.expires_at >= now,
        )
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def list_locks(session: Session) -> list[db_models.JobLock]:
    model = db_models.JobLock
    return list(session.execute(select(model).order_by(model.job_name)).scalars().all())
