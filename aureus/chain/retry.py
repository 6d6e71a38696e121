"""
aureus.chain.retry — Backoff & Circuit Breaker
===============================================

Provider calls run on a worker thread (see :func:`aureus.database.engine.run_db`),
so both helpers here are synchronous.  ``sleep`` and ``clock`` are
injectable so tests don't wait on real time.
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from aureus.engine.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exponential backoff
# ---------------------------------------------------------------------------
def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    jitter: float = 1.0,
) -> float:
    """``min(initial * 2**attempt + U(0, jitter), max_delay)``."""
    return min(initial_delay * (2 ** attempt) + random.uniform(0, jitter), max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = (ProviderError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying up to *max_retries* times on *retry_on* errors.

    The last error propagates unchanged once retries are exhausted.
    Anything not in *retry_on* propagates immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt + 1, max_retries + 1, exc, delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------
class BreakerState(enum.StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Stops hammering a provider that keeps failing.

    After *threshold* consecutive failures the breaker opens and every call
    fails fast with :class:`ProviderError` until *timeout* seconds have
    passed.  The next call is then let through (half-open): success closes
    the breaker, failure re-opens it.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock
        self._failures = 0
        self._opened_at = 0.0
        self._state = BreakerState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    def call(self, fn: Callable[[], T]) -> T:
        with self._lock:
            if self._state is BreakerState.OPEN:
                if self._clock() - self._opened_at >= self.timeout:
                    self._state = BreakerState.HALF_OPEN
                    logger.info("Circuit breaker half-open, letting one call through")
                else:
                    raise ProviderError("Circuit breaker is OPEN")

        try:
            result = fn()
        except ProviderError:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = 0.0
            self._state = BreakerState.CLOSED

    def _on_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = BreakerState.CLOSED

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is BreakerState.HALF_OPEN or self._failures >= self.threshold:
                if self._state is not BreakerState.OPEN:
                    logger.warning(
                        "Circuit breaker OPEN after %d consecutive failures", self._failures,
                    )
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
