"""
Clock -- the single source of "now".

Document numbers, status timestamps, issue dates and the choice of billing
quarter all depend on the current instant.  Services receive a Clock in
their constructor instead of calling ``datetime.now()`` so that tests can
pin time and step it forward.

Every value a Clock hands out is timezone-aware.  ``DeterministicClock``
refuses naive datetimes outright (ValueError).
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("DeterministicClock requires a timezone-aware datetime")
    return value


class Clock(ABC):
    """Injectable time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant, in whatever zone the clock was built with."""

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def epoch_ms(self) -> int:
        """Whole milliseconds since 1970-01-01 UTC; feeds document numbering."""
        return (self.now_utc() - _EPOCH) // _ONE_MS


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock for tests.  Time stands still until moved with ``advance``,
    ``tick`` or ``set_time``.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = _require_aware(fixed_time) if fixed_time is not None else DEFAULT_TEST_TIME

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = _require_aware(time)

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        """Move forward one second and return the new instant."""
        self.advance(1)
        return self._current
