"""
Metrics for table reconciliation runs.

Every series is labelled by mapping (``target_schema.target_table``).
"""

import logging
import time
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from . import get_or_create_metric

logger = logging.getLogger(__name__)


class MirrorMetrics:
    """
    Counters and histograms for reconciliation runs.

    ``record_run`` takes anything shaped like a ``RunResult`` (attributes
    ``mapping``, ``success``, ``duration_seconds``, ``inserted``, ``updated``,
    ``unchanged``, ``deleted``, ``duplicates``, ``chunks_committed``).
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize mirror metrics

        Args:
            registry: Prometheus registry (default: the global registry)
        """
        self.registry = registry or REGISTRY

        def metric(factory, name):
            return get_or_create_metric(factory, name, self.registry)

        self.runs_total = metric(
            lambda: Counter(
                "mirror_runs_total",
                "Reconciliation runs by outcome",
                ["mapping", "status"],
                registry=self.registry,
            ),
            "mirror_runs_total",
        )
        self.run_duration_seconds = metric(
            lambda: Histogram(
                "mirror_run_duration_seconds",
                "Duration of reconciliation runs in seconds",
                ["mapping"],
                buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
                registry=self.registry,
            ),
            "mirror_run_duration_seconds",
        )
        self.last_run_timestamp = metric(
            lambda: Gauge(
                "mirror_last_run_timestamp_seconds",
                "Unix time the last run of a mapping finished",
                ["mapping"],
                registry=self.registry,
            ),
            "mirror_last_run_timestamp_seconds",
        )
        self.rows_classified_total = metric(
            lambda: Counter(
                "mirror_rows_classified_total",
                "Source rows by classification",
                ["mapping", "classification"],
                registry=self.registry,
            ),
            "mirror_rows_classified_total",
        )
        self.chunks_total = metric(
            lambda: Counter(
                "mirror_chunks_total",
                "Chunks by outcome",
                ["mapping", "status"],
                registry=self.registry,
            ),
            "mirror_chunks_total",
        )
        self.rows_deleted_total = metric(
            lambda: Counter(
                "mirror_rows_deleted_total",
                "Orphan target rows deleted",
                ["mapping"],
                registry=self.registry,
            ),
            "mirror_rows_deleted_total",
        )
        self.duplicate_keys_total = metric(
            lambda: Counter(
                "mirror_duplicate_keys_total",
                "Repeated primary keys seen in the source stream",
                ["mapping"],
                registry=self.registry,
            ),
            "mirror_duplicate_keys_total",
        )
        self.cache_peak_rows = metric(
            lambda: Gauge(
                "mirror_target_cache_peak_rows",
                "Largest number of target rows held in the cache during the last run",
                ["mapping"],
                registry=self.registry,
            ),
            "mirror_target_cache_peak_rows",
        )

    def record_chunk(self, mapping: str, committed: bool) -> None:
        """
        Count one chunk transaction.

        Args:
            mapping: Mapping label
            committed: False when the chunk was rolled back
        """
        self.chunks_total.labels(
            mapping=mapping, status="committed" if committed else "failed"
        ).inc()

    def record_run(self, result: Any, cache_peak: int | None = None) -> None:
        """
        Record the totals of a finished run.

        Args:
            result: Finished run result
            cache_peak: Largest target cache size seen, if a cache was used
        """
        mapping = result.mapping
        status = "success" if result.success else "failed"

        self.runs_total.labels(mapping=mapping, status=status).inc()
        self.run_duration_seconds.labels(mapping=mapping).observe(result.duration_seconds)
        self.last_run_timestamp.labels(mapping=mapping).set(time.time())

        for classification, count in (
            ("insert", result.inserted),
            ("update", result.updated),
            ("noop", result.unchanged),
        ):
            if count:
                self.rows_classified_total.labels(
                    mapping=mapping, classification=classification
                ).inc(count)

        if result.deleted:
            self.rows_deleted_total.labels(mapping=mapping).inc(result.deleted)
        if result.duplicates:
            self.duplicate_keys_total.labels(mapping=mapping).inc(result.duplicates)
        if cache_peak is not None:
            self.cache_peak_rows.labels(mapping=mapping).set(cache_peak)

        logger.debug(
            f"Recorded run metrics: mapping={mapping}, status={status}, "
            f"duration={result.duration_seconds:.2f}s"
        )
