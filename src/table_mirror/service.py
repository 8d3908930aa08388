"""
Runs every table mapping, each as an isolated reconciliation run.

Each run gets its own connections, target cache and key tracker; with
``max_workers > 1`` runs execute on a thread pool, each worker borrowing its
own pooled connections.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import AbstractContextManager, ExitStack, contextmanager
from datetime import UTC, datetime

from opentelemetry import trace

from utils import db_pool
from utils.database_types import DatabaseType
from utils.metrics import MirrorMetrics
from utils.retry import is_retryable_db_exception, retry_database_operation
from utils.tracing import trace_operation

from .endpoints import DbApiSource, DbApiTarget, SourceEndpoint, TargetEndpoint
from .engine import ReconciliationRun, RunResult
from .errors import RunCancelled, TransientIOError
from .mapping import MirrorSettings, TableMapping

logger = logging.getLogger(__name__)

EndpointFactory = Callable[
    [TableMapping], AbstractContextManager[tuple[SourceEndpoint, TargetEndpoint]]
]


@retry_database_operation(max_retries=3, base_delay=1.0, max_delay=30.0)
def _borrow(stack: ExitStack, pool: db_pool.BaseConnectionPool):
    return stack.enter_context(pool.acquire())


class PooledEndpointFactory:
    """
    Opens a source and a target endpoint for a mapping from ``utils.db_pool``.

    Pools must have been configured with ``db_pool.initialize_pools``.
    Transient connection failures are retried with backoff.
    """

    def __init__(
        self,
        source_db_type: DatabaseType | str = DatabaseType.SQLSERVER,
        get_pool: Callable[[str, str | None], db_pool.BaseConnectionPool] = db_pool.get_pool,
    ):
        self.source_db_type = DatabaseType.parse(source_db_type)
        self.get_pool = get_pool

    @contextmanager
    def __call__(self, mapping: TableMapping) -> Iterator[tuple[SourceEndpoint, TargetEndpoint]]:
        with ExitStack() as stack:
            source_conn = _borrow(stack, self.get_pool("source", mapping.source_database))
            target_conn = _borrow(stack, self.get_pool("target", mapping.target_database))
            yield (
                DbApiSource(
                    source_conn,
                    mapping.source_schema,
                    mapping.source_table,
                    mapping.primary_key,
                    db_type=self.source_db_type,
                ),
                DbApiTarget(
                    target_conn,
                    mapping.target_schema,
                    mapping.target_table,
                    mapping.primary_key,
                    db_type=DatabaseType.SQLSERVER,
                ),
            )


class MirrorService:
    """
    Executes reconciliation runs for a list of mappings.

    Args:
        endpoint_factory: Context manager factory yielding (source, target) per mapping
        settings: Run settings shared by every run
        max_workers: Concurrent runs; 1 runs mappings in order
        fail_fast: Cancel the remaining runs after the first failure
        metrics: Optional Prometheus recorder
    """

    def __init__(
        self,
        endpoint_factory: EndpointFactory,
        settings: MirrorSettings | None = None,
        max_workers: int = 1,
        fail_fast: bool = False,
        metrics: MirrorMetrics | None = None,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {max_workers}")
        self.endpoint_factory = endpoint_factory
        self.settings = settings or MirrorSettings()
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.metrics = metrics
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop every active run at its next chunk boundary."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def run_mapping(self, mapping: TableMapping) -> RunResult:
        """Run one mapping on freshly borrowed connections."""
        try:
            with self.endpoint_factory(mapping) as (source, target):
                run = ReconciliationRun(
                    mapping,
                    source,
                    target,
                    settings=self.settings,
                    cancel_event=self._cancel_event,
                    metrics=self.metrics,
                )
                return run.execute()
        except Exception as e:
            error = e
            if is_retryable_db_exception(e):
                error = TransientIOError(f"Cannot connect for {mapping.label}: {e}")
            logger.error(f"Run of {mapping.label} could not start: {error}")
            result = RunResult(mapping=mapping.label, started_at=datetime.now(UTC))
            result.fail(error)
            result.finished_at = result.started_at
            if self.metrics:
                self.metrics.record_run(result)
            return result

    def _after(self, result: RunResult) -> None:
        if not result.success and self.fail_fast and not self._cancel_event.is_set():
            logger.warning(f"{result.mapping} failed and fail-fast is on; cancelling remaining runs")
            self._cancel_event.set()

    def run_all(self, mappings: list[TableMapping]) -> list[RunResult]:
        """
        Run every mapping; results come back in mapping order.

        Mappings not yet started when the service is cancelled are reported
        as failed with ``RunCancelled``.
        """
        self._cancel_event.clear()
        results: dict[int, RunResult] = {}

        def run_one(mapping: TableMapping) -> RunResult:
            if self._cancel_event.is_set():
                result = RunResult(mapping=mapping.label, started_at=datetime.now(UTC))
                result.fail(RunCancelled(f"Run of {mapping.label} cancelled before start"))
                return result
            return self.run_mapping(mapping)

        with trace_operation(
            "mirror.run_all",
            kind=trace.SpanKind.INTERNAL,
            mapping_count=len(mappings),
            max_workers=self.max_workers,
        ):
            if not mappings:
                logger.warning("No table mappings to run")
                return []

            logger.info(
                f"Running {len(mappings)} mapping(s) with {self.max_workers} worker(s)"
            )

            if self.max_workers == 1 or len(mappings) == 1:
                for index, mapping in enumerate(mappings):
                    results[index] = run_one(mapping)
                    self._after(results[index])
            else:
                with ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="mirror"
                ) as executor:
                    futures = {
                        executor.submit(run_one, mapping): index
                        for index, mapping in enumerate(mappings)
                    }
                    for future in as_completed(futures):
                        index = futures[future]
                        results[index] = future.result()
                        self._after(results[index])

        ordered = [results[index] for index in range(len(mappings))]
        succeeded = sum(1 for result in ordered if result.success)
        logger.info(f"Completed {succeeded}/{len(ordered)} run(s) successfully")
        return ordered
