"""Three-state circuit breaker guarding backend invocations."""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import StrEnum

from loguru import logger

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT_SECONDS = 30.0


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Closed -> open after repeated failures, half-open probe after a cooldown.

    There are no timers: elapsed time is sampled when `can_execute` is called.
    Only the broker worker mutates a breaker, so it carries no lock.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def can_execute(self) -> bool:
        if self._state is CircuitState.OPEN:
            if self._clock() - self._last_failure_at < self._reset_timeout:
                return False
            self._transition(CircuitState.HALF_OPEN)
        return True

    def record_success(self) -> None:
        self._failure_count = 0
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()
        if self._state is CircuitState.OPEN:
            return
        if self._state is CircuitState.HALF_OPEN or self._failure_count >= self._failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, target: CircuitState) -> None:
        logger.info(
            "circuit.transition from={} to={} failures={}",
            self._state.value,
            target.value,
            self._failure_count,
        )
        self._state = target
