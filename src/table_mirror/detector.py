"""
Change detection: classify each source row as Insert, Update or NoOp.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum

from .endpoints import TargetEndpoint
from .errors import ConfigurationError
from .mapping import TableMapping
from .rows import FLOAT_TOLERANCE, KeyProjection, Row, canonical_key, is_newer, values_equal
from .target_cache import TargetCacheLoader
from .tracker import ProcessedKeyTracker

logger = logging.getLogger(__name__)


class ChangeClassification(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    NOOP = "noop"


@dataclass
class DuplicateKeyAnomaly:
    """A primary key the source stream produced more than once."""

    key: tuple
    occurrences: int = 2

    def to_dict(self) -> dict:
        return {"key": list(self.key), "occurrences": self.occurrences}


class LookupStrategy:
    """
    How the detector finds the target row matching a source key.

    ``find(key)`` returns the target row (consuming it) or None.
    """

    name = "base"

    def prepare(self) -> None:
        """Called once before the first lookup."""

    def find(self, key: tuple) -> Row | None:
        raise NotImplementedError

    @property
    def cache_peak(self) -> int:
        return 0

    def close(self) -> None:
        """Release cached rows."""


class PagedCacheStrategy(LookupStrategy):
    """Target pages are loaded on demand, in step with the source stream."""

    name = "paged"

    def __init__(self, loader: TargetCacheLoader):
        self.loader = loader

    def find(self, key: tuple) -> Row | None:
        return self.loader.lookup_and_evict(key)

    @property
    def cache_peak(self) -> int:
        return self.loader.peak_size

    def close(self) -> None:
        self.loader.clear()


class FullScanStrategy(PagedCacheStrategy):
    """The whole target is loaded once up front; for targets that fit in memory."""

    name = "full"

    def prepare(self) -> None:
        loaded = self.loader.load_all()
        logger.info(f"Loaded full target {self.loader.endpoint.label}: {loaded} rows")


class PointLookupStrategy(LookupStrategy):
    """One keyed query per source row; for small sources against large targets."""

    name = "point"

    def __init__(self, endpoint: TargetEndpoint):
        self.endpoint = endpoint

    def find(self, key: tuple) -> Row | None:
        return self.endpoint.fetch_by_key(key)


def select_strategy(mapping: TableMapping, estimated_target_rows: int | None, page_size: int) -> str:
    """
    Strategy name for a run.

    An explicit mapping strategy wins; ``auto`` loads the full target when its
    estimated size fits in one page and pages through it otherwise.
    """
    if mapping.strategy != "auto":
        return mapping.strategy
    if estimated_target_rows is not None and estimated_target_rows <= page_size:
        return "full"
    return "paged"


def build_strategy(
    name: str,
    target: TargetEndpoint,
    tracker: ProcessedKeyTracker,
    page_size: int,
) -> LookupStrategy:
    if name == "point":
        return PointLookupStrategy(target)
    loader = TargetCacheLoader(target, page_size=page_size, tracker=tracker)
    if name == "full":
        return FullScanStrategy(loader)
    if name == "paged":
        return PagedCacheStrategy(loader)
    raise ConfigurationError(f"Unknown change detection strategy: {name!r}")


class ChangeDetector:
    """
    Classifies source rows against the target.

    Keys are recorded in the tracker before the target is consulted; a key
    the tracker already holds is a duplicate in the source and classifies as
    NoOp. A present target row whose non-key source columns all compare equal
    is NoOp unless the mapping's last-modified column is strictly newer on the
    source.
    """

    def __init__(
        self,
        mapping: TableMapping,
        strategy: LookupStrategy,
        tracker: ProcessedKeyTracker,
        float_tolerance: float = FLOAT_TOLERANCE,
    ):
        self.mapping = mapping
        self.strategy = strategy
        self.tracker = tracker
        self.float_tolerance = float_tolerance
        self.projection = KeyProjection(mapping.primary_key)
        self.counts: Counter = Counter()
        self._duplicates: dict[tuple, DuplicateKeyAnomaly] = {}
        self._key_names = {name.lower() for name in mapping.primary_key}

    @property
    def anomalies(self) -> list[DuplicateKeyAnomaly]:
        return list(self._duplicates.values())

    @property
    def duplicate_count(self) -> int:
        return sum(anomaly.occurrences - 1 for anomaly in self._duplicates.values())

    def _record_duplicate(self, key: tuple) -> None:
        anomaly = self._duplicates.get(key)
        if anomaly is None:
            self._duplicates[key] = DuplicateKeyAnomaly(key)
        else:
            anomaly.occurrences += 1
        logger.warning(
            f"Duplicate primary key {key} in source {self.mapping.source_label}; "
            "repeat ignored"
        )

    def differs(self, source: Row, target: Row) -> bool:
        """True when any non-key source column differs from the target's value."""
        for name, value in zip(source.columns, source.values):
            if name.lower() in self._key_names:
                continue
            if not values_equal(value, target.get(name), self.float_tolerance):
                return True
        return False

    def _is_newer(self, source: Row, target: Row) -> bool:
        column = self.mapping.last_modified_column
        if not column or column not in source or column not in target:
            return False
        return is_newer(source[column], target[column])

    def classify(self, row: Row | None) -> ChangeClassification:
        classification = self._classify(row)
        self.counts[classification] += 1
        return classification

    def _classify(self, row: Row | None) -> ChangeClassification:
        if not row:
            return ChangeClassification.NOOP

        key = self.projection.project(row)
        identity = canonical_key(key)
        if not self.tracker.add(identity):
            self._record_duplicate(identity)
            return ChangeClassification.NOOP

        existing = self.strategy.find(key)
        if existing is None:
            return ChangeClassification.INSERT
        if self.differs(row, existing) or self._is_newer(row, existing):
            return ChangeClassification.UPDATE
        return ChangeClassification.NOOP
