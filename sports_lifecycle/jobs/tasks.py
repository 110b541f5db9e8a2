"""Celery tasks for the lifecycle worker.

This module re-exports all tasks from specialized modules for Celery discovery.
New code should import directly from lifecycle_tasks.
"""

from __future__ import annotations

# Re-export all tasks for Celery discovery
from .lifecycle_tasks import (
    retry_failed_settlements,
    run_lifecycle_health,
    run_lifecycle_job,
    run_scheduled_discover,
    run_scheduled_finalize,
    run_scheduled_settle,
    run_scheduled_sync,
)

__all__ = [
    "run_lifecycle_job",
    "run_scheduled_discover",
    "run_scheduled_sync",
    "run_scheduled_finalize",
    "run_scheduled_settle",
    "run_lifecycle_health",
    "retry_failed_settlements",
]
