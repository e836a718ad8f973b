"""
Retry helpers for billing operations.

``ExponentialBackoff`` schedules persisted retries (webhook processing);
``retry_on_conflict`` re-runs an internal read-modify-write after losing an
optimistic-lock race.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from ledgerline.billing.exceptions import OptimisticLockError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """Exponential backoff: ``base_delay * 2**attempt`` capped at ``max_delay``."""

    def __init__(self, base_delay: float = 60.0, max_delay: float = 3600.0, jitter: bool = False):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(seconds=self.get_delay(attempt))


def _log_conflict_retry(retry_state: RetryCallState) -> None:
    logger.info(
        "billing.conflict.retrying",
        attempt=retry_state.attempt_number,
        operation=getattr(retry_state.fn, "__qualname__", None),
    )


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    max_wait: float = 0.5,
) -> T:
    """Run ``operation`` again when it loses an optimistic-lock race.

    ``operation`` must re-read its entity on every call. The final
    ``OptimisticLockError`` propagates once ``attempts`` are exhausted.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(OptimisticLockError),
        stop=stop_after_attempt(attempts),
        wait=wait_random_exponential(multiplier=0.01, max=max_wait),
        before_sleep=_log_conflict_retry,
        reraise=True,
    ):
        with attempt:
            result = await operation()
    return result


__all__ = ["ExponentialBackoff", "retry_on_conflict"]
