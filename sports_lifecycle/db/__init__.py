"""
Database models and session management for the lifecycle worker.

Session management:
    from sports_lifecycle.db import get_session, db_models

The engine is created lazily so tests can import every module without
connecting to PostgreSQL.
"""

from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..logging import logger
from ..models.enums import SettlementStatus, StatusNorm, WinnerSide
from .base import Base
from .events import SportsEvent
from .lifecycle import JobLock, LifecycleJobRun, SettlementQueueItem

db_models = SimpleNamespace(
    # Enums
    StatusNorm=StatusNorm,
    WinnerSide=WinnerSide,
    SettlementStatus=SettlementStatus,
    # Models
    SportsEvent=SportsEvent,
    JobLock=JobLock,
    SettlementQueueItem=SettlementQueueItem,
    LifecycleJobRun=LifecycleJobRun,
)

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            echo=settings.sql_echo,
            future=True,
            pool_pre_ping=True,
        )
    return _engine


def _get_session_factory() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            class_=Session,
        )
    return _SessionLocal


@contextmanager
def get_session() -> Iterator[Session]:
    """
    Provide a transactional database session context manager.

    Commits on clean exit, rolls back and re-raises on error.

    Usage:
        with get_session() as session:
            session.add(obj)
    """
    session = _get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("db_session_rollback", error=str(exc))
        raise
    finally:
        session.close()


def dispose_engine() -> None:
    """Dispose of the pooled connections (used after a worker fork)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


__all__ = ["Base", "get_session", "get_engine", "dispose_engine", "db_models"]
