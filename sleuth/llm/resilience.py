"""
Retry and circuit-breaking around provider stream setup.

- `RetryBudget`: retries shared by every provider call in one turn
- `retry_with_backoff`: exponential backoff with jitter, honoring a classified retry-after
- `CircuitBreaker`: per-provider; opens after consecutive failures, half-opens after a cooldown
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sleuth.llm.errors import ClassifiedError, ErrorCategory, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryBudget:
    def __init__(self, max_retries: int = 10) -> None:
        self.max_retries = max(0, int(max_retries))
        self._remaining = self.max_retries

    def can_retry(self) -> bool:
        return self._remaining > 0

    def consume(self) -> None:
        if self._remaining > 0:
            self._remaining -= 1

    @property
    def exhausted(self) -> bool:
        return self._remaining <= 0

    @property
    def used(self) -> int:
        return self.max_retries - self._remaining

    def reset(self) -> None:
        self._remaining = self.max_retries


@dataclass
class RetryConfig:
    max_attempts: int = 3
    min_wait_seconds: float = 0.5
    max_wait_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_fraction: float = 0.25

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to sleep before retry number `attempt` (0-based)."""
        if retry_after is not None and retry_after > 0:
            return float(retry_after)
        wait = min(self.max_wait_seconds, self.min_wait_seconds * (self.exponential_base**attempt))
        return wait + random.uniform(0, wait * self.jitter_fraction)


_BREAKER_CATEGORIES = {
    ErrorCategory.CONNECTION,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.TRANSIENT,
}


def counts_against_breaker(classified: ClassifiedError) -> bool:
    """Only provider-health failures count; cancellation and request errors do not."""
    return classified.category in _BREAKER_CATEGORIES


class BrokenCircuitError(Exception):
    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit breaker open for {name}; service unavailable, retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout_seconds = float(reset_timeout_seconds)
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.reset_timeout_seconds:
            return self.HALF_OPEN
        return self.OPEN

    def before_call(self) -> None:
        if self.state == self.OPEN:
            remaining = self.reset_timeout_seconds - (self._clock() - (self._opened_at or 0.0))
            raise BrokenCircuitError(self.name, max(0.0, remaining))

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit: closed provider=%s", self.name)
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        if self.state == self.HALF_OPEN:
            self._opened_at = self._clock()
            logger.warning("circuit: half-open trial call failed provider=%s", self.name)
            return
        self._failures += 1
        if self._failures >= self.failure_threshold and self._opened_at is None:
            self._opened_at = self._clock()
            logger.warning("circuit: opened provider=%s failures=%s", self.name, self._failures)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    provider: str,
    model: str = "",
    budget: Optional[RetryBudget] = None,
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[ClassifiedError], bool]] = None,
) -> T:
    """
    Await `fn()` until it succeeds or a retry is not allowed.

    A failure is retried only when its classified category is retryable, the per-turn
    budget has room, `should_retry` (if given) agrees and `config.max_attempts` is not
    reached. The last error is re-raised unchanged.
    """
    cfg = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            classified = classify_error(provider, e, model=model)
            attempt += 1
            if not classified.retryable or attempt >= cfg.max_attempts:
                raise
            if budget is not None and not budget.can_retry():
                logger.warning("retry: budget exhausted provider=%s used=%s", provider, budget.used)
                raise
            if should_retry is not None and not should_retry(classified):
                raise
            if budget is not None:
                budget.consume()
            delay = cfg.delay_for(attempt - 1, classified.retry_after)
            logger.warning(
                "retry: provider=%s category=%s attempt=%s/%s wait=%.2fs",
                provider,
                classified.category.value,
                attempt,
                cfg.max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
