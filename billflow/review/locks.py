"""
Keyed locks.

Review actions on one bill run one at a time, and one document is
processed by one task at a time; different keys never wait on each
other. A key's lock lives only while someone holds or waits for it.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class LockRegistry:
    """
    Example:
        >>> locks = LockRegistry()
        >>> with locks.hold("bill_1"):
        ...     case.accept_field("total")
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: Dict[str, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)
