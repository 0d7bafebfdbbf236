"""
KeyedLock -- in-process lock registry keyed by entity id.

Serializes writers for the same document (or org quarter) while letting
writers for different keys proceed in parallel.  Entries are reference
counted and dropped when the last holder releases, so the registry does
not grow with the number of documents ever touched.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator, Hashable


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLock:
    """Per-key reentrant locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(
        self, key: Hashable, timeout: float | None = None
    ) -> Generator[None, None, None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            TimeoutError: If ``timeout`` elapses before the lock is acquired.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.holders += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise TimeoutError(f"Timed out waiting for lock on {key!r}")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._entries)
