"""
Retry policy, pass deadline and the typed outcome of a gateway call.
"""

import logging
import random
import time
from dataclasses import dataclass
from dataclasses import field
from typing import Callable
from typing import Generic
from typing import TypeVar

from assignment_calendar_sync.gateway import GatewayError
from assignment_calendar_sync.gateway import RateLimited
from assignment_calendar_sync.gateway import Transient
from assignment_calendar_sync.models import ErrorKind

T = TypeVar("T")

_default_logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with jitter for rate limits and transient failures."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def is_retryable(self, error: GatewayError) -> bool:
        return isinstance(error, (RateLimited, Transient))

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt, capped at max_delay."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay += self.rng.uniform(0, delay * self.jitter)
        return min(self.max_delay, delay)

    def delay_for(self, error: GatewayError, attempt: int) -> float | None:
        """Seconds to wait before the next attempt, or None to stop retrying."""
        if not self.is_retryable(error) or attempt >= self.max_attempts:
            return None
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return error.retry_after
        return self.backoff(attempt)


class Deadline:
    """Wall-clock budget for one pass; None means unbounded."""

    def __init__(self, budget: float | None, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.budget = budget
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        if self.budget is None:
            return float("inf")
        return self.budget - self.elapsed

    def expired(self) -> bool:
        return self.remaining() <= 0

    def allows(self, delay: float) -> bool:
        """True when waiting ``delay`` seconds still leaves time for another call."""
        return delay < self.remaining()


@dataclass
class Outcome(Generic[T]):
    value: T | None = None
    kind: ErrorKind | None = None
    error: GatewayError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.kind is None


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    deadline: Deadline,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "gateway call",
    logger: logging.Logger | None = None,
) -> Outcome[T]:
    """
    Run ``operation`` until it succeeds, fails for good or the deadline hits.

    Never raises for gateway failures. Unauthorized and NotFound come back
    unretried so the caller can refresh or recreate.
    """
    logger = logger or _default_logger
    attempt = 0
    while True:
        if deadline.expired():
            return Outcome(kind=ErrorKind.TIMEOUT, attempts=attempt)
        attempt += 1
        try:
            value = operation()
        except GatewayError as e:
            delay = policy.delay_for(e, attempt)
            if delay is None:
                if policy.is_retryable(e):
                    logger.error(f"{description} failed after {attempt} attempt(s): {e}")
                return Outcome(kind=e.kind, error=e, attempts=attempt)
            if not deadline.allows(delay):
                logger.warning(
                    f"{description}: retry in {delay:.1f}s would exceed the sync deadline"
                )
                return Outcome(kind=ErrorKind.TIMEOUT, error=e, attempts=attempt)
            logger.warning(
                f"{description} attempt {attempt}/{policy.max_attempts} failed ({e}); "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
            continue
        if attempt > 1:
            logger.info(f"{description} succeeded after {attempt} attempts")
        return Outcome(value=value, attempts=attempt)
