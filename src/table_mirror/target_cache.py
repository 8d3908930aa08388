"""
Lazily loaded cache of target rows, in the same key order as the source stream.
"""

import logging
import threading

from .endpoints import TargetEndpoint
from .rows import KeyProjection, Row, canonical_key, key_order_matches_python
from .tracker import ProcessedKeyTracker

logger = logging.getLogger(__name__)


class TargetCacheLoader:
    """
    Key-to-row cache over a target table, filled one keyset page at a time.

    A lookup loads pages until the key is cached or the target is exhausted;
    entries are evicted once matched. Rows are cached under their canonical
    key so UUID text from different drivers matches.

    Pages arrive in the database's index order, which only agrees with
    Python's ordering for numeric and temporal keys. For those keys the source
    is known to have moved past anything below the requested key, so cached
    keys below it are dropped on each load, and a key at or below the last
    loaded key that is not cached does not exist in the target. Text, UUID and
    binary keys get neither shortcut.

    Target rows whose key was already processed by an earlier chunk are not
    cached.

    The load-then-read sequence runs under an ``RLock``.
    """

    def __init__(
        self,
        endpoint: TargetEndpoint,
        page_size: int = 5000,
        tracker: ProcessedKeyTracker | None = None,
    ):
        self.endpoint = endpoint
        self.page_size = page_size
        self.tracker = tracker
        self.projection = KeyProjection(endpoint.key_columns)

        self._cache: dict[tuple, Row] = {}
        self._lock = threading.RLock()
        self._last_key: tuple | None = None
        self._exhausted = False
        self.pages_loaded = 0
        self.peak_size = 0

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def load_next_page(self, wanted: tuple | None = None) -> int:
        """
        Fetch the next target page into the cache.

        Args:
            wanted: Canonical key being looked up; it is cached even if already
                marked processed, and for ordered keys cached keys below it
                are pruned

        Returns:
            Number of rows fetched (0 once exhausted)
        """
        with self._lock:
            if self._exhausted:
                return 0

            page = self.endpoint.fetch_page(self._last_key, self.page_size)
            self.pages_loaded += 1
            if len(page) < self.page_size:
                self._exhausted = True

            if wanted is not None and key_order_matches_python(wanted):
                self._prune_below(wanted)

            for row in page:
                key = canonical_key(self.projection.project(row))
                if key != wanted and self.tracker is not None and key in self.tracker:
                    continue
                self._cache[key] = row

            if page:
                # Raw driver values, so the next keyset predicate compares as the server does.
                self._last_key = self.projection.project(page[-1])

            self.peak_size = max(self.peak_size, len(self._cache))
            logger.debug(
                f"Loaded target page {self.pages_loaded} of {self.endpoint.label}: "
                f"{len(page)} rows, cache size {len(self._cache)}"
            )
            return len(page)

    def _prune_below(self, wanted: tuple) -> None:
        stale = [key for key in self._cache if key_order_matches_python(key) and key < wanted]
        for key in stale:
            del self._cache[key]

    def _beyond_frontier(self, key: tuple) -> bool:
        """True when pages already loaded cover ``key``'s position."""
        if self._last_key is None:
            return False
        if not (key_order_matches_python(key) and key_order_matches_python(self._last_key)):
            return False
        try:
            return key <= self._last_key
        except TypeError:
            return False

    def lookup(self, key: tuple) -> Row | None:
        """
        Cached row for ``key``, loading pages as needed.

        Args:
            key: Key tuple as projected from a source row

        Returns:
            The target row, or None once the target cannot hold ``key``
        """
        wanted = canonical_key(key)
        with self._lock:
            while True:
                row = self._cache.get(wanted)
                if row is not None:
                    return row
                if self._exhausted or self._beyond_frontier(wanted):
                    return None
                self.load_next_page(wanted=wanted)

    def evict(self, key: tuple) -> None:
        with self._lock:
            self._cache.pop(canonical_key(key), None)

    def lookup_and_evict(self, key: tuple) -> Row | None:
        """``lookup`` then ``evict``, atomically."""
        with self._lock:
            row = self.lookup(key)
            if row is not None:
                del self._cache[canonical_key(key)]
            return row

    def load_all(self) -> int:
        """Load every remaining page; returns rows fetched."""
        total = 0
        with self._lock:
            while not self._exhausted:
                total += self.load_next_page()
        return total

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
