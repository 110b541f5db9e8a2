"""Tests for structlog configuration."""

from __future__ import annotations

import logging

import structlog
from structlog.testing import capture_logs

from sports_lifecycle.config import settings
from sports_lifecycle.logging import _normalize_log_level, logger


class TestConfigureLogging:
    def test_import_configures_json_output(self):
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[0], structlog.processors.TimeStamper)
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_events_carry_worker_context(self):
        with capture_logs() as logs:
            logger.info("job_lock_acquired", job="sync")

        assert logs == [
            {
                "event": "job_lock_acquired",
                "log_level": "info",
                "job": "sync",
                "service": "sports-lifecycle",
                "environment": settings.environment,
                "worker_id": settings.worker_id,
            }
        ]


class TestNormalizeLogLevel:
    def test_explicit_level_wins(self):
        assert _normalize_log_level(" warning ", "production") == logging.WARNING

    def test_default_depends_on_environment(self):
        assert _normalize_log_level(None, "production") == logging.INFO
        assert _normalize_log_level(None, "development") == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        assert _normalize_log_level("chatty", "development") == logging.INFO
