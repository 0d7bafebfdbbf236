"""
Deadline -- monotonic time budget with a cancel flag.

Responsibility:
    Carries a caller-supplied timeout into store I/O.  Stores call
    ``check()`` immediately before every commit; an expired or cancelled
    deadline raises PersistenceTimeoutError and the unit of work rolls back.

Architecture position:
    Kernel > Domain.  Uses ``time.monotonic`` (injectable) so wall-clock
    adjustments never extend or shorten a budget.

Invariants enforced:
    - Fail closed: once expired or cancelled, ``check()`` always raises.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from commerce_kernel.exceptions import PersistenceTimeoutError


class Deadline:
    """
    Time budget for one unit of work.

    A ``timeout_seconds`` of None means unbounded; the deadline can still
    be cancelled.  Cancellation is thread-safe so an async caller can
    cancel a deadline that a worker thread is checking.
    """

    def __init__(
        self,
        timeout_seconds: float | None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        self._timeout = timeout_seconds
        self._monotonic = monotonic
        self._started = monotonic()
        self._cancelled = threading.Event()

    @classmethod
    def unbounded(cls) -> Deadline:
        return cls(None)

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Mark the deadline cancelled. Idempotent."""
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left in the budget, never negative. None when unbounded."""
        if self._timeout is None:
            return None
        return max(0.0, self._timeout - (self._monotonic() - self._started))

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str) -> None:
        """
        Raise if the budget is spent or the deadline was cancelled.

        Raises:
            PersistenceTimeoutError: with ``cancelled`` set accordingly.
        """
        if self.cancelled:
            raise PersistenceTimeoutError(operation, self._timeout, cancelled=True)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise PersistenceTimeoutError(operation, self._timeout)
