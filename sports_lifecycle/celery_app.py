"""Celery app configuration for the lifecycle worker."""

from __future__ import annotations

from datetime import timedelta

from celery import Celery, signals
from celery.schedules import crontab

from .config import settings
from .db import dispose_engine, get_session
from .logging import logger
from .services.health import release_stale_processing_locks
from .services.job_runs import mark_stale_runs_interrupted

QUEUE = "sports-lifecycle"
_ROUTE = {"queue": QUEUE, "routing_key": QUEUE}

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_track_started": True,
    "worker_prefetch_multiplier": 1,
    "task_time_limit": settings.lifecycle_config.task_time_limit_seconds,
    "task_soft_time_limit": settings.lifecycle_config.task_time_limit_seconds - 60,
    "task_default_queue": QUEUE,
    "result_expires": 3600,
}

app = Celery(
    "sports-lifecycle",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["sports_lifecycle.jobs.tasks"],
)
app.conf.update(**celery_config)
app.conf.task_routes = {
    "run_lifecycle_job": _ROUTE,
    "run_scheduled_discover": _ROUTE,
    "run_scheduled_sync": _ROUTE,
    "run_scheduled_finalize": _ROUTE,
    "run_scheduled_settle": _ROUTE,
    "run_lifecycle_health": _ROUTE,
    "retry_failed_settlements": _ROUTE,
}
# A tick that fires while the same phase still holds its job lock is skipped
app.conf.beat_schedule = {
    "lifecycle-discover-every-30-min": {
        "task": "run_scheduled_discover",
        "schedule": crontab(minute="*/30"),
        "options": _ROUTE,
    },
    "lifecycle-sync-every-2-min": {
        "task": "run_scheduled_sync",
        "schedule": crontab(minute="*/2"),
        "options": _ROUTE,
    },
    "lifecycle-finalize-every-5-min": {
        "task": "run_scheduled_finalize",
        "schedule": crontab(minute="*/5"),
        "options": _ROUTE,
    },
    "lifecycle-settle-every-2-min": {
        "task": "run_scheduled_settle",
        "schedule": crontab(minute="1-59/2"),  # offset from sync
        "options": _ROUTE,
    },
    "lifecycle-health-every-15-min": {
        "task": "run_lifecycle_health",
        "schedule": crontab(minute="*/15"),
        "kwargs": {"repair_issues": True},
        "options": _ROUTE,
    },
    "lifecycle-retry-failed-hourly": {
        "task": "retry_failed_settlements",
        "schedule": crontab(minute=7),
        "options": _ROUTE,
    },
}


@signals.worker_process_init.connect
def on_worker_process_init(**kwargs):
    """Forked pool processes must not share the parent's connections."""
    dispose_engine()


@signals.worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    """Called when Celery worker is ready. Clean up after a previous crash."""
    worker_name = getattr(sender, "hostname", None) or (str(sender) if sender else "unknown")
    logger.info("celery_worker_ready", worker=worker_name)
    try:
        mark_stale_runs_interrupted(older_than=timedelta(hours=1))
        with get_session() as session:
            release_stale_processing_locks(session)
    except Exception as exc:
        logger.exception("worker_ready_cleanup_failed", error=str(exc))


@signals.worker_shutting_down.connect
def on_worker_shutting_down(sender=None, **kwargs):
    """Called when Celery worker is shutting down."""
    worker_name = str(sender) if sender else "unknown"
    logger.info("celery_worker_shutting_down", worker=worker_name)
