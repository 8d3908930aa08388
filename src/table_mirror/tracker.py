"""
Set of primary keys observed from the source during one run.
"""

import threading
from collections.abc import Iterable, Iterator


class ProcessedKeyTracker:
    """
    Append-only, thread-safe key set; the basis of orphan detection.

    Lives for exactly one run and is cleared when the run ends.
    """

    def __init__(self):
        self._keys: set[tuple] = set()
        self._lock = threading.Lock()

    def add(self, key: tuple) -> bool:
        """Record ``key``; True if it was not seen before."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def missing(self, keys: Iterable[tuple]) -> list[tuple]:
        """The keys in ``keys`` that were never recorded."""
        with self._lock:
            return [key for key in keys if key not in self._keys]

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __iter__(self) -> Iterator[tuple]:
        with self._lock:
            return iter(list(self._keys))

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()
