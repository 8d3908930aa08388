"""
Prometheus metrics for table-mirror.

Usage:
    from utils.metrics import MetricsPublisher, MirrorMetrics

    MetricsPublisher(port=9108).start()
    metrics = MirrorMetrics()
    metrics.record_run(result)
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from prometheus_client import REGISTRY, CollectorRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_or_create_metric(
    metric_factory: Callable[[], T],
    metric_name: str,
    registry: CollectorRegistry = REGISTRY,
) -> T:
    """
    Create a metric, or return the collector already registered under its name.

    Registering the same name twice raises ``ValueError`` in prometheus_client;
    this makes module reloads and repeated ``MirrorMetrics()`` construction
    against the global registry safe.

    Example:
        RUNS = get_or_create_metric(
            lambda: Counter("mirror_runs_total", "Runs", ["mapping"]),
            "mirror_runs_total",
        )
    """
    try:
        return metric_factory()
    except ValueError:
        existing = registry._names_to_collectors.get(metric_name)
        if existing is not None:
            return existing
        raise


from .mirror import MirrorMetrics  # noqa: E402
from .publisher import MetricsPublisher  # noqa: E402

__all__ = [
    "MetricsPublisher",
    "MirrorMetrics",
    "get_or_create_metric",
]
