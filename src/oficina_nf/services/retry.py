from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TypeVar

import requests.exceptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    backoff_factor: float = 2.0
    max_delay: float | None = None
    jitter: float = 0.0
    retryable_exceptions: tuple[type[Exception], ...] = ()

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1 = after the first failure)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)


# Short in-call retry for the provider submit. Only connection failures are
# retried: once the request reached the provider a repeat could double-emit.
PROVIDER_SUBMIT = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=5.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
)


def emission_backoff(attempts: int, unit_seconds: float) -> timedelta:
    """Worker backoff after *attempts* failures: 2^(attempts-1) * unit.

    With a 60s unit: 1, 2, 4, 8... minutes. No cap and no jitter, so the
    schedule is predictable for operators reading nf_jobs.next_run_at.
    """
    policy = RetryPolicy(max_attempts=attempts, base_delay=unit_seconds)
    return timedelta(seconds=policy.delay(attempts))


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Execute *func()* with retry per *policy*, re-raising on exhaustion."""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func()
        except policy.retryable_exceptions as exc:
            if attempt == policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "Retry %d/%d after %s (%.1fs delay)",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
    raise AssertionError("unreachable")
