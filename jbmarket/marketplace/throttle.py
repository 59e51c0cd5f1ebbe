"""Rate limiting and retries for marketplace requests."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from jbmarket.config.schemas import RetryConfig
from jbmarket.marketplace.base import NetworkFailure, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryBudgetExhausted(Exception):
    """A request kept failing after every allowed attempt."""

    def __init__(self, description: str, attempts: int, last_error: Exception):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        self.summary = None  # BuildSummary of the aborted run, set by the builder
        super().__init__(f"{description}: giving up after {attempts} attempt(s): {last_error}")


class RateLimiter:
    """Token bucket shared by all workers of a run.

    Each request takes one token; tokens refill at `rate` per second up to
    `burst`. A lock serializes access to the counter, the wait happens
    outside it.
    """

    def __init__(
        self,
        rate: float,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._rate = rate
        self._burst = burst or max(1, int(rate))
        self._tokens = float(self._burst)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a token is available."""
        while True:
            with self._lock:
                now = self._clock()
                self._tokens = min(self._burst, self._tokens + (now - self._updated) * self._rate)
                self._updated = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self._rate
            self._sleep(wait)


def call_with_retries(
    fn: Callable[[], T],
    policy: RetryConfig,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying transient marketplace failures.

    NetworkFailure is retried with exponential backoff. RateLimited waits
    for the server-mandated delay (capped by the policy). Any other
    exception, NotFound included, propagates immediately.

    Args:
        fn: Zero-argument callable performing one request
        policy: Retry budget
        description: What is being fetched, for logs and errors
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        RetryBudgetExhausted: If every attempt failed transiently
    """
    delay = policy.backoff_seconds
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except RateLimited as e:
            if attempt == policy.attempts:
                raise RetryBudgetExhausted(description, attempt, e) from e
            wait = min(e.retry_after, policy.max_rate_limit_wait_seconds)
            logger.warning(
                "%s: rate limited, waiting %.1fs (attempt %d)", description, wait, attempt
            )
            sleep(wait)
        except NetworkFailure as e:
            if attempt == policy.attempts:
                raise RetryBudgetExhausted(description, attempt, e) from e
            logger.warning("%s: %s. Might retry (attempt %d).", description, e, attempt)
            sleep(delay)
            delay = min(delay * policy.backoff_factor, policy.max_backoff_seconds)

    # attempts >= 1 is enforced by RetryConfig
    raise AssertionError("unreachable")
