"""
Bounded exponential backoff for transient persistence faults.

Only the persistence coordinator and the billing service retry, and only
for the exception types they name.  Everything else propagates on the
first attempt.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from commerce_kernel.logging_config import get_logger

logger = get_logger("utils.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule.

    Delay before attempt n (n >= 2) is
    ``backoff_seconds * backoff_multiplier ** (n - 2)``.
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.05
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return self.backoff_seconds * self.backoff_multiplier ** (attempt - 2)


class RetryExhausted(Exception):
    """Internal signal carrying the last transient error and attempt count."""

    def __init__(self, last_error: Exception, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"gave up after {attempts} attempts: {last_error}")


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
    before_attempt: Callable[[int], None] | None = None,
) -> T:
    """
    Call ``fn`` until it succeeds or the attempt budget is spent.

    ``before_attempt`` runs ahead of each attempt (after the backoff sleep)
    and may raise to abort; callers use it to check a Deadline.

    Raises:
        RetryExhausted: When every attempt raised one of ``retry_on``.
        Any exception not in ``retry_on``, unchanged, on first occurrence.
    """
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        delay = policy.delay_before(attempt)
        if delay > 0:
            sleep(delay)
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            return fn()
        except retry_on as e:
            last_error = e
            logger.warning(
                "transient_failure",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error_type": type(e).__name__,
                },
            )
    assert last_error is not None
    raise RetryExhausted(last_error, policy.max_attempts)
