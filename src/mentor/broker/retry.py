"""Bounded fixed-delay retry around one backend call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from mentor.broker.circuit import CircuitBreaker
from mentor.errors import BackendIOError, BackendTimeoutError, SpawnError

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (SpawnError, BackendIOError, BackendTimeoutError)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, RETRYABLE_ERRORS)


class RetryPolicy:
    """Retry transient backend failures and report the outcome to a breaker."""

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.delay = delay
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]], breaker: CircuitBreaker) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except Exception as exc:
                if attempt <= self.max_retries and is_retryable(exc):
                    logger.warning(
                        "broker.retry attempt={}/{} error={}",
                        attempt,
                        self.max_retries,
                        exc,
                    )
                    await self._sleep(self.delay)
                    continue
                logger.error("broker.attempts.failed attempts={} error={}", attempt, exc)
                breaker.record_failure()
                raise
            breaker.record_success()
            return result
