"""Fail-fast environment validation for the lifecycle worker and scheduler.

Runs before settings are parsed so a misconfigured container exits at
startup instead of doing partial work against the wrong store.

Production roles (LIFECYCLE_ROLE, default ``worker``):
    worker: runs the phases and needs API_SPORTS_KEY and API_INTERNAL_URL.
    beat: only schedules tasks and needs the broker and the store.
"""

from __future__ import annotations

import os
from functools import lru_cache
from urllib.parse import urlparse

ALLOWED_ENVIRONMENTS = {"development", "staging", "production"}

# Extra variables each role needs in production, beyond the store and broker.
ROLE_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "worker": ("API_SPORTS_KEY", "API_INTERNAL_URL"),
    "beat": (),
}
ALLOWED_LIFECYCLE_ROLES = set(ROLE_REQUIREMENTS)

# Variables holding URLs that must reach a real host in production.
_REMOTE_URLS = {"DATABASE_URL", "REDIS_URL", "API_INTERNAL_URL"}

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def require_env(name: str) -> str:
    """Fetch an environment variable or raise RuntimeError if missing."""
    value = (os.getenv(name) or "").strip()
    if not value:
        raise RuntimeError(f"{name} is required and must be set before startup.")
    return value


def _one_of(name: str, value: str, allowed: set[str]) -> str:
    if value not in allowed:
        raise RuntimeError(f"{name} must be one of: {', '.join(sorted(allowed))}.")
    return value


def validate_scheme(name: str, value: str, prefix: str) -> None:
    """The store must be postgres and the broker redis, whatever the driver suffix."""
    scheme = urlparse(value).scheme
    if scheme.split("+", 1)[0] not in {prefix, f"{prefix}s"}:
        raise RuntimeError(f"{name} must use the {prefix} scheme (got {scheme or 'none'!r}).")


def validate_non_local_url(name: str, value: str) -> None:
    """Ensure a URL names a host and that host is not the local machine."""
    host = urlparse(value).hostname
    if not host:
        raise RuntimeError(f"{name} must be a valid URL (missing hostname).")
    if host in _LOCAL_HOSTS:
        raise RuntimeError(f"{name} must not point to localhost in production.")


def validate_database_credentials(value: str) -> None:
    """Reject the stock postgres/postgres login outside development."""
    parsed = urlparse(value)
    if (parsed.username, parsed.password) == ("postgres", "postgres"):
        raise RuntimeError(
            "DATABASE_URL must not use default postgres credentials in production."
        )


@lru_cache(maxsize=1)
def validate_env() -> None:
    """Validate required environment variables before the process starts."""
    environment = _one_of("ENVIRONMENT", require_env("ENVIRONMENT"), ALLOWED_ENVIRONMENTS)

    values = {name: require_env(name) for name in ("DATABASE_URL", "REDIS_URL")}
    validate_scheme("DATABASE_URL", values["DATABASE_URL"], "postgresql")
    validate_scheme("REDIS_URL", values["REDIS_URL"], "redis")

    if environment != "production":
        return

    role = _one_of("LIFECYCLE_ROLE", os.getenv("LIFECYCLE_ROLE", "worker"), ALLOWED_LIFECYCLE_ROLES)
    values.update({name: require_env(name) for name in ROLE_REQUIREMENTS[role]})

    for name, value in values.items():
        if name in _REMOTE_URLS:
            validate_non_local_url(name, value)
    validate_database_credentials(values["DATABASE_URL"])
