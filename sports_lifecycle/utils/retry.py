"""Backoff for upstream fetches (tenacity) and the settlement queue's stored retry times."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..logging import logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * factor**(attempt - 1), capped at max_delay."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    factor: float = 2.0
    max_delay_seconds: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            attempt = 1
        delay = self.base_delay_seconds * (self.factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def next_attempt_at(
        self,
        attempt: int,
        now: datetime,
        previous: datetime | None = None,
    ) -> datetime:
        """Next eligible time after *attempt* failures, never earlier than *previous*."""
        candidate = now + timedelta(seconds=self.delay_for(attempt))
        if previous is not None and previous > candidate:
            return previous
        return candidate

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def _log_retry(operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        logger.info(
            "retry_scheduled",
            operation=operation,
            attempt=state.attempt_number,
            max_attempts=max_attempts,
            delay_seconds=state.next_action.sleep if state.next_action else None,
            error=str(state.outcome.exception()) if state.outcome else None,
        )

    return before_sleep


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "call",
) -> T:
    """Call *fn* under *policy*, re-raising the last exception once it is exhausted.

    Exceptions outside *retry_on*, or listed in *give_up_on*, propagate
    after the first attempt.
    """
    condition = retry_if_exception_type(retry_on)
    if give_up_on:
        condition = condition & retry_if_not_exception_type(give_up_on)
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay_seconds,
            exp_base=policy.factor,
            max=policy.max_delay_seconds,
        ),
        retry=condition,
        sleep=sleep,
        before_sleep=_log_retry(operation, policy.max_attempts),
        reraise=True,
    )
    try:
        return retrying(fn)
    except retry_on as exc:
        if not isinstance(exc, give_up_on):
            logger.warning(
                "retry_exhausted",
                operation=operation,
                attempts=retrying.statistics.get("attempt_number"),
                error=str(exc),
            )
        raise


def fetch_retry_policy() -> RetryPolicy:
    """Policy for one upstream league/date fetch."""
    from ..config import settings

    cfg = settings.event_source_config
    return RetryPolicy(
        max_attempts=cfg.retry_attempts,
        base_delay_seconds=cfg.retry_base_delay_seconds,
        factor=2.0,
        max_delay_seconds=cfg.retry_max_delay_seconds,
    )


def settlement_retry_policy() -> RetryPolicy:
    """Policy for settlement executor failures (queue-level backoff)."""
    from ..config import settings

    cfg = settings.lifecycle_config
    return RetryPolicy(
        max_attempts=cfg.settlement_max_attempts,
        base_delay_seconds=cfg.settlement_backoff_base_seconds,
        factor=cfg.settlement_backoff_factor,
        max_delay_seconds=cfg.settlement_backoff_max_seconds,
    )
