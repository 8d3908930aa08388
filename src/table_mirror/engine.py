"""
Reconciliation run: stream the source, classify, merge per chunk, then clean up.

State machine::

    INIT ──> STREAMING ──> COMPLETED ──> (cleanup) ──> DONE
                 │                            │
                 └────────> FAILED <──────────┘

A failure or cancellation while streaming skips cleanup; chunks already
committed stay committed.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from utils.logging import ContextLogger
from utils.metrics import MirrorMetrics
from utils.tracing import trace_operation

from .cleanup import OrphanCleaner
from .detector import (
    ChangeClassification,
    ChangeDetector,
    DuplicateKeyAnomaly,
    build_strategy,
    select_strategy,
)
from .endpoints import SourceEndpoint, TargetEndpoint
from .errors import ConfigurationError, MirrorError, RunCancelled
from .mapping import MirrorSettings, TableMapping
from .reader import SourceStreamReader
from .rows import KeyProjection, Row
from .sql import build_merge_plan
from .tracker import ProcessedKeyTracker

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    DONE = "done"


@dataclass
class RunResult:
    """Outcome of one reconciliation run. Counts only include committed chunks."""

    mapping: str
    state: RunState = RunState.INIT
    success: bool = False
    strategy: str | None = None
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    duplicates: int = 0
    rows_read: int = 0
    chunks_committed: int = 0
    anomalies: list[DuplicateKeyAnomaly] = field(default_factory=list)
    error_type: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0

    @property
    def rows_written(self) -> int:
        return self.inserted + self.updated

    def fail(self, exc: BaseException) -> None:
        self.state = RunState.FAILED
        self.success = False
        self.error_type = type(exc).__name__
        self.error = str(exc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping": self.mapping,
            "state": self.state.value,
            "success": self.success,
            "strategy": self.strategy,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "duplicates": self.duplicates,
            "rows_read": self.rows_read,
            "chunks_committed": self.chunks_committed,
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
            "error_type": self.error_type,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunResult":
        """Rebuild a result from ``to_dict`` output (saved run files)."""

        def timestamp(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            mapping=data["mapping"],
            state=RunState(data.get("state", RunState.FAILED.value)),
            success=bool(data.get("success", False)),
            strategy=data.get("strategy"),
            inserted=data.get("inserted", 0),
            updated=data.get("updated", 0),
            unchanged=data.get("unchanged", 0),
            deleted=data.get("deleted", 0),
            duplicates=data.get("duplicates", 0),
            rows_read=data.get("rows_read", 0),
            chunks_committed=data.get("chunks_committed", 0),
            anomalies=[
                DuplicateKeyAnomaly(tuple(item["key"]), item.get("occurrences", 2))
                for item in data.get("anomalies", [])
            ],
            error_type=data.get("error_type"),
            error=data.get("error"),
            started_at=timestamp(data.get("started_at")),
            finished_at=timestamp(data.get("finished_at")),
            duration_seconds=data.get("duration_seconds", 0.0),
        )


class ReconciliationRun:
    """
    Makes one target table mirror one source table.

    Args:
        mapping: The table mapping
        source: Source endpoint (read only)
        target: Target endpoint (read, merged into, deleted from)
        settings: Chunk/page sizes and cleanup switch
        cancel_event: Checked after every committed chunk
        metrics: Optional Prometheus recorder
    """

    def __init__(
        self,
        mapping: TableMapping,
        source: SourceEndpoint,
        target: TargetEndpoint,
        settings: MirrorSettings | None = None,
        cancel_event: threading.Event | None = None,
        metrics: MirrorMetrics | None = None,
    ):
        self.mapping = mapping
        self.source = source
        self.target = target
        self.settings = settings or MirrorSettings()
        self.cancel_event = cancel_event or threading.Event()
        self.metrics = metrics

        self.tracker = ProcessedKeyTracker()
        self.log = ContextLogger(__name__, mapping=mapping.label)
        self._strategy = None
        self._writer = None
        self._cache_peak = 0
        self._phase = RunState.INIT

    def _check_keys(self, endpoint: SourceEndpoint, side: str) -> None:
        declared = [name.lower() for name in self.mapping.primary_key]
        if [name.lower() for name in endpoint.key_columns] != declared:
            raise ConfigurationError(
                f"{side} endpoint {endpoint.label} is keyed on {', '.join(endpoint.key_columns)}, "
                f"mapping {self.mapping.label} declares {', '.join(self.mapping.primary_key)}"
            )

    def _prepare(self, result: RunResult) -> ChangeDetector:
        """INIT: discover schemas, build the merge plan, pick a strategy, open the writer."""
        self._check_keys(self.source, "Source")
        self._check_keys(self.target, "Target")

        source_schema = self.source.describe()
        target_schema = self.target.describe()
        projection = KeyProjection(self.mapping.primary_key)
        projection.check(source_schema, f"source {self.mapping.source_label}")
        projection.check(target_schema, f"target {self.mapping.label}")

        plan = build_merge_plan(
            self.mapping, source_schema, target_schema, self.target.identity_columns()
        )

        estimated = None
        if self.mapping.strategy == "auto":
            estimated = self.target.estimate_row_count()
        result.strategy = select_strategy(self.mapping, estimated, self.settings.page_size)
        self.log.update_context(strategy=result.strategy)
        self.log.info(
            f"Run prepared: strategy={result.strategy}, estimated target rows={estimated}, "
            f"identity_insert={plan.identity_insert}"
        )

        self._strategy = build_strategy(
            result.strategy, self.target, self.tracker, self.settings.page_size
        )
        self._writer = self.target.open_writer(plan)
        self._strategy.prepare()

        return ChangeDetector(
            self.mapping, self._strategy, self.tracker, self.settings.float_tolerance
        )

    def _commit_chunk(self, chunk: list[Row], counts: Counter, result: RunResult) -> None:
        try:
            self._writer.write_chunk(chunk)
        except MirrorError:
            if self.metrics:
                self.metrics.record_chunk(self.mapping.label, committed=False)
            raise

        result.inserted += counts[ChangeClassification.INSERT]
        result.updated += counts[ChangeClassification.UPDATE]
        result.unchanged += counts[ChangeClassification.NOOP]
        result.duplicates += counts["duplicate"]
        result.chunks_committed += 1
        if self.metrics:
            self.metrics.record_chunk(self.mapping.label, committed=True)
        self.log.debug(
            f"Chunk {result.chunks_committed} committed: "
            f"{counts[ChangeClassification.INSERT]} inserted, "
            f"{counts[ChangeClassification.UPDATE]} updated"
        )

    def _stream(self, detector: ChangeDetector, result: RunResult) -> None:
        """STREAMING: read, classify and write chunk by chunk."""
        reader = SourceStreamReader(self.source, page_size=self.settings.page_size)
        chunk: list[Row] = []
        counts: Counter = Counter()
        seen = 0

        try:
            for row in reader:
                duplicates_before = detector.duplicate_count
                classification = detector.classify(row)
                if detector.duplicate_count > duplicates_before:
                    counts["duplicate"] += 1
                else:
                    counts[classification] += 1
                if classification is not ChangeClassification.NOOP:
                    chunk.append(row)
                seen += 1

                if seen >= self.settings.chunk_size:
                    self._commit_chunk(chunk, counts, result)
                    chunk, counts, seen = [], Counter(), 0
                    if self.cancel_event.is_set():
                        raise RunCancelled(
                            f"Run of {self.mapping.label} cancelled after "
                            f"{result.chunks_committed} chunk(s)"
                        )

            if seen:
                self._commit_chunk(chunk, counts, result)
        finally:
            result.rows_read = reader.rows_read
            result.anomalies = detector.anomalies

    def execute(self) -> RunResult:
        """
        Run to completion and return the result; never raises for run failures.
        """
        result = RunResult(mapping=self.mapping.label, started_at=datetime.now(UTC))
        start = time.monotonic()
        self.log.info(f"Reconciling {self.mapping.source_label} -> {self.mapping.label}")

        with trace_operation(
            "mirror.run",
            mapping=self.mapping.label,
            source=self.mapping.source_label,
        ) as span:
            try:
                detector = self._prepare(result)
                result.state = self._phase = RunState.STREAMING
                self._stream(detector, result)
                result.state = self._phase = RunState.COMPLETED

                if self.settings.cleanup and self.mapping.delete_orphans:
                    cleaner = OrphanCleaner(
                        self.target,
                        self.tracker,
                        self._writer,
                        page_size=self.settings.page_size,
                        batch_size=self.settings.delete_batch_size,
                    )
                    try:
                        cleaner.run()
                    finally:
                        result.deleted = cleaner.deleted
                else:
                    self.log.info("Orphan cleanup disabled")

                result.state = RunState.DONE
                result.success = True
            except MirrorError as e:
                result.fail(e)
                self.log.error(f"Run failed after state {self._phase.value}: {e}")
            except Exception as e:
                result.fail(e)
                self.log.error(f"Run failed with unexpected error: {e}", exc_info=True)
            finally:
                self._release()

            result.finished_at = datetime.now(UTC)
            result.duration_seconds = time.monotonic() - start

            span.set_attribute("success", result.success)
            span.set_attribute("rows_written", result.rows_written)
            span.set_attribute("rows_deleted", result.deleted)

        if result.duplicates:
            self.log.warning(f"{result.duplicates} duplicate source key(s) ignored")
        if self.metrics:
            self.metrics.record_run(result, cache_peak=self._cache_peak)

        self.log.info(
            f"Run finished: state={result.state.value}, inserted={result.inserted}, "
            f"updated={result.updated}, unchanged={result.unchanged}, "
            f"deleted={result.deleted}, duration={result.duration_seconds:.2f}s"
        )
        return result

    def _release(self) -> None:
        self._cache_peak = self._strategy.cache_peak if self._strategy else 0
        self.tracker.clear()
        if self._strategy is not None:
            self._strategy.close()
        if self._writer is not None:
            self._writer.close()
