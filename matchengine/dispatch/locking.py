"""Per-pair mutual exclusion for score writes."""

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Hashable, Optional

from matchengine.exceptions import ComputeTimeout
from matchengine.logging import get_logger

logger = get_logger(__name__, component="locking")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    Registry of locks keyed by an arbitrary hashable (a (student, opportunity) pair).

    Locks are created on first use and dropped once nobody holds or waits on
    them, so the registry stays proportional to in-flight work.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def holding(self, key: Hashable, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Hold the lock for `key` for the duration of the block.

        Args:
            key: Lock key
            timeout: Seconds to wait for the lock (None waits forever)

        Raises:
            ComputeTimeout: If the lock could not be acquired in time
        """
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else max(timeout, 0.0))
            if not acquired:
                logger.warning(
                    f"Timed out waiting for pair lock {key}",
                    extra={"event": "lock.timeout", "lock_key": str(key), "timeout_seconds": timeout},
                )
                raise ComputeTimeout(f"Timed out waiting for lock on {key}")
            try:
                self.on_acquired(key)
                yield
            finally:
                self.on_released(key)
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def on_acquired(self, key: Hashable) -> None:
        """Hook called right after the lock is taken."""

    def on_released(self, key: Hashable) -> None:
        """Hook called right before the lock is released."""

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                self._entries.pop(key, None)
