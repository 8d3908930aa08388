"""
Thread-safe database connection pooling.

Connections are validated before they are handed out, recycled once they
exceed their idle time or lifetime, and reset when they are returned so a
reconciliation run that left a transaction open (or switched autocommit off
for its merge writer) never leaks that state into the next borrower.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from queue import Empty, Queue
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from utils.metrics import get_or_create_metric
from utils.tracing import trace_operation

logger = logging.getLogger(__name__)

POOL_LABELS = ["database_type", "pool_name"]

CONNECTION_POOL_SIZE = get_or_create_metric(
    lambda: Gauge("db_connection_pool_size", "Open connections in the pool", POOL_LABELS),
    "db_connection_pool_size",
)
CONNECTION_POOL_IDLE = get_or_create_metric(
    lambda: Gauge("db_connection_pool_idle", "Idle connections in the pool", POOL_LABELS),
    "db_connection_pool_idle",
)
CONNECTION_POOL_TIMEOUTS = get_or_create_metric(
    lambda: Counter(
        "db_connection_pool_timeouts_total",
        "Acquire calls that timed out",
        POOL_LABELS,
    ),
    "db_connection_pool_timeouts_total",
)
CONNECTION_POOL_ERRORS = get_or_create_metric(
    lambda: Counter(
        "db_connection_pool_errors_total",
        "Connection pool errors",
        POOL_LABELS + ["error_type"],
    ),
    "db_connection_pool_errors_total",
)
CONNECTION_ACQUIRE_TIME = get_or_create_metric(
    lambda: Histogram(
        "db_connection_acquire_seconds",
        "Time to acquire a connection from the pool",
        POOL_LABELS,
        buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    ),
    "db_connection_acquire_seconds",
)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(eq=False)
class PooledConnection:
    """A pooled connection with its bookkeeping."""

    connection: Any
    created_at: datetime = field(default_factory=_now)
    last_used: datetime = field(default_factory=_now)
    use_count: int = 0

    def mark_used(self) -> None:
        """Mark connection as used and update timestamp."""
        self.last_used = _now()
        self.use_count += 1


class ConnectionPoolError(Exception):
    """Base exception for connection pool errors."""


class PoolExhaustedError(ConnectionPoolError):
    """No connection became available within the acquire timeout."""


class PoolClosedError(ConnectionPoolError):
    """The pool was used after ``close()``."""


class BaseConnectionPool:
    """
    Base class for database connection pools.

    Subclasses implement ``_create_connection``, ``_is_connection_healthy``,
    ``_reset_connection``, ``_close_connection`` and ``_get_db_type``.
    """

    def __init__(
        self,
        min_size: int = 1,
        max_size: int = 5,
        max_idle_time: int = 300,
        max_lifetime: int = 3600,
        health_check_interval: int = 60,
        acquire_timeout: float = 30.0,
        pool_name: str = "default",
    ):
        """
        Initialize connection pool.

        Args:
            min_size: Connections opened eagerly
            max_size: Upper bound on open connections
            max_idle_time: Seconds a connection may sit idle before it is recycled
            max_lifetime: Seconds after which a connection is recycled
            health_check_interval: Seconds between background sweeps; 0 disables
                the background thread
            acquire_timeout: Seconds ``acquire`` waits for a free connection
            pool_name: Label used in metrics and logs

        Raises:
            ValueError: If ``min_size`` exceeds ``max_size``
        """
        if min_size > max_size:
            raise ValueError(f"min_size ({min_size}) cannot exceed max_size ({max_size})")

        self.min_size = min_size
        self.max_size = max_size
        self.max_idle_time = timedelta(seconds=max_idle_time)
        self.max_lifetime = timedelta(seconds=max_lifetime)
        self.health_check_interval = health_check_interval
        self.acquire_timeout = acquire_timeout
        self.pool_name = pool_name

        self._idle: Queue[PooledConnection] = Queue(maxsize=max_size)
        self._all_connections: list[PooledConnection] = []
        self._lock = threading.RLock()
        self._closed = False
        self._stop_event = threading.Event()

        self._fill_to_minimum()

        self._health_check_thread: threading.Thread | None = None
        if health_check_interval > 0:
            self._health_check_thread = threading.Thread(
                target=self._health_check_worker,
                name=f"pool-health-{pool_name}",
                daemon=True,
            )
            self._health_check_thread.start()

        logger.info(
            f"Initialized {self.__class__.__name__} '{pool_name}' "
            f"(min={min_size}, max={max_size})"
        )

    # Subclass hooks

    def _create_connection(self) -> Any:
        """Create a new database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _is_connection_healthy(self, conn: Any) -> bool:
        """Check if connection is healthy. Must be implemented by subclasses."""
        raise NotImplementedError

    def _reset_connection(self, conn: Any) -> None:
        """Return a borrowed connection to its pristine state."""
        raise NotImplementedError

    def _close_connection(self, conn: Any) -> None:
        """Close a database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _get_db_type(self) -> str:
        """Get database type for metrics. Must be implemented by subclasses."""
        raise NotImplementedError

    # Internals

    def _labels(self) -> dict[str, str]:
        return {"database_type": self._get_db_type(), "pool_name": self.pool_name}

    def _record_error(self, error_type: str) -> None:
        CONNECTION_POOL_ERRORS.labels(**self._labels(), error_type=error_type).inc()

    def _open(self) -> PooledConnection:
        """
        Open a connection and register it with the pool.

        Returns:
            The new pooled connection, not yet in the idle queue
        """
        pooled = PooledConnection(connection=self._create_connection())
        with self._lock:
            self._all_connections.append(pooled)
        return pooled

    def _fill_to_minimum(self) -> None:
        """Open connections until the pool holds ``min_size``; stops at the first failure."""
        with self._lock:
            missing = self.min_size - len(self._all_connections)
            for _ in range(max(missing, 0)):
                try:
                    self._idle.put_nowait(self._open())
                except Exception as e:
                    logger.error(f"Pool '{self.pool_name}': failed to open connection: {e}")
                    self._record_error("creation")
                    break
            self._update_metrics()

    def _is_usable(self, pooled: PooledConnection) -> bool:
        """
        Check a connection's age and health.

        Args:
            pooled: Connection to check

        Returns:
            True if the connection can be handed out
        """
        now = _now()
        if now - pooled.created_at > self.max_lifetime:
            logger.debug(f"Pool '{self.pool_name}': connection exceeded max lifetime")
            return False
        if now - pooled.last_used > self.max_idle_time:
            logger.debug(f"Pool '{self.pool_name}': connection exceeded max idle time")
            return False
        try:
            return self._is_connection_healthy(pooled.connection)
        except Exception as e:
            logger.warning(f"Pool '{self.pool_name}': health check failed: {e}")
            self._record_error("health_check")
            return False

    def _discard(self, pooled: PooledConnection) -> None:
        """Close and remove a connection from the pool."""
        try:
            self._close_connection(pooled.connection)
        except Exception as e:
            logger.warning(f"Pool '{self.pool_name}': error closing connection: {e}")
        finally:
            with self._lock:
                if pooled in self._all_connections:
                    self._all_connections.remove(pooled)
                self._update_metrics()

    def _health_check_worker(self) -> None:
        """Background worker to perform periodic health checks."""
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Pool '{self.pool_name}': health check sweep failed: {e}")

    def _update_metrics(self) -> None:
        """Update Prometheus metrics."""
        with self._lock:
            CONNECTION_POOL_SIZE.labels(**self._labels()).set(len(self._all_connections))
            CONNECTION_POOL_IDLE.labels(**self._labels()).set(self._idle.qsize())

    # Public API

    def sweep(self) -> int:
        """
        Recycle idle connections that fail validation, then refill to ``min_size``.

        Returns:
            Number of connections recycled
        """
        if self._closed:
            return 0

        keep: list[PooledConnection] = []
        recycled = 0
        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                break
            if self._is_usable(pooled):
                keep.append(pooled)
            else:
                self._discard(pooled)
                recycled += 1

        for pooled in keep:
            self._idle.put_nowait(pooled)

        if recycled:
            logger.info(f"Pool '{self.pool_name}': recycled {recycled} connection(s)")
        self._fill_to_minimum()
        return recycled

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Borrow a connection.

        The connection is reset (rolled back, autocommit restored) when the
        block exits; if the reset fails the connection is discarded.

        Yields:
            Database connection

        Raises:
            PoolClosedError: If the pool is closed
            PoolExhaustedError: If no connection is available within ``acquire_timeout``
        """
        if self._closed:
            raise PoolClosedError(f"Connection pool '{self.pool_name}' is closed")

        start_time = time.monotonic()
        pooled: PooledConnection | None = None

        with trace_operation(
            "db_pool.acquire",
            kind=trace.SpanKind.CLIENT,
            database_type=self._get_db_type(),
            pool_name=self.pool_name,
        ):
            while pooled is None:
                remaining = self.acquire_timeout - (time.monotonic() - start_time)
                if remaining <= 0:
                    CONNECTION_POOL_TIMEOUTS.labels(**self._labels()).inc()
                    raise PoolExhaustedError(
                        f"No connection available in '{self.pool_name}' "
                        f"within {self.acquire_timeout}s"
                    )

                try:
                    candidate = self._idle.get_nowait()
                except Empty:
                    candidate = None
                    with self._lock:
                        can_grow = len(self._all_connections) < self.max_size
                    if can_grow:
                        # Connection errors propagate so callers can retry them
                        candidate = self._open()
                    else:
                        try:
                            candidate = self._idle.get(timeout=min(remaining, 0.5))
                        except Empty:
                            continue

                if self._is_usable(candidate):
                    pooled = candidate
                else:
                    self._discard(candidate)

            pooled.mark_used()
            self._update_metrics()
            CONNECTION_ACQUIRE_TIME.labels(**self._labels()).observe(
                time.monotonic() - start_time
            )

        try:
            yield pooled.connection
        finally:
            self._release(pooled)

    def _release(self, pooled: PooledConnection) -> None:
        """Reset a returned connection and put it back in the idle queue, or discard it."""
        if self._closed:
            self._discard(pooled)
            return
        try:
            self._reset_connection(pooled.connection)
        except Exception as e:
            logger.warning(f"Pool '{self.pool_name}': reset on release failed, discarding: {e}")
            self._record_error("reset")
            self._discard(pooled)
            return
        self._idle.put_nowait(pooled)
        self._update_metrics()

    def close(self) -> None:
        """Close every connection and stop the health check thread."""
        if self._closed:
            return

        logger.info(f"Closing connection pool '{self.pool_name}': {self.get_stats()}")
        self._closed = True
        self._stop_event.set()

        with self._lock:
            for pooled in list(self._all_connections):
                try:
                    self._close_connection(pooled.connection)
                except Exception as e:
                    logger.warning(f"Pool '{self.pool_name}': error closing connection: {e}")
            self._all_connections.clear()
            while True:
                try:
                    self._idle.get_nowait()
                except Empty:
                    break

    def get_stats(self) -> dict[str, Any]:
        """
        Get pool statistics.

        Returns:
            Dictionary of connection counts and pool settings
        """
        with self._lock:
            total_size = len(self._all_connections)
            idle_size = self._idle.qsize()
            return {
                "pool_name": self.pool_name,
                "total_connections": total_size,
                "idle_connections": idle_size,
                "active_connections": total_size - idle_size,
                "min_size": self.min_size,
                "max_size": self.max_size,
                "closed": self._closed,
            }
