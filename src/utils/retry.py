"""
Transient database error classification and retry with exponential backoff.

The reconciliation core never retries a chunk on its own: it only uses
``is_retryable_db_exception`` to tell transient failures (connection drops,
timeouts, deadlocks) apart from permanent ones. Retrying is reserved for
connection acquisition, outside the core.

Usage:
    from utils.retry import retry_database_operation

    @retry_database_operation(max_retries=3, base_delay=1.0)
    def connect():
        return pyodbc.connect(connection_string)
"""

import logging
import random
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)

# Common transient error patterns in driver messages
RETRYABLE_PATTERNS = (
    "connection",
    "timeout",
    "timed out",
    "deadlock",
    "lock wait timeout",
    "lost connection",
    "server has gone away",
    "can't connect",
    "unable to connect",
    "connection refused",
    "connection reset",
    "broken pipe",
    "network error",
    "communication link failure",
    "connection closed",
    "connection terminated",
)

RETRYABLE_EXCEPTION_NAMES = (
    "connectionerror",
    "timeouterror",
    "operationalerror",
    "interfaceerror",
)

# ODBC SQLSTATE prefixes: 08xxx connection exception, HYT00/HYT01 timeouts,
# 40001 serialization failure (SQL Server deadlock victim)
RETRYABLE_SQLSTATE_PREFIXES = ("08", "HYT", "40001")


def _sqlstate(exception: Exception) -> str | None:
    """Extract the SQLSTATE of a pyodbc / psycopg2 error, when present."""
    pgcode = getattr(exception, "pgcode", None)
    if isinstance(pgcode, str):
        return pgcode

    args = getattr(exception, "args", ())
    if args and isinstance(args[0], str) and len(args[0]) == 5:
        return args[0]
    return None


def is_retryable_db_exception(exception: Exception) -> bool:
    """
    Determine if a database exception is transient.

    Checks, in order: the SQLSTATE carried by the driver error, the exception
    type name, and common transient phrases in the message.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    state = _sqlstate(exception)
    if state and state.upper().startswith(RETRYABLE_SQLSTATE_PREFIXES):
        return True

    exception_type = type(exception).__name__.lower()
    if exception_type in RETRYABLE_EXCEPTION_NAMES:
        return True

    exception_str = str(exception).lower()
    return any(
        pattern in exception_str or pattern in exception_type
        for pattern in RETRYABLE_PATTERNS
    )


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with +/-25% jitter, never below 100ms."""
    delay = min(base_delay * (2.0 ** attempt), max_delay)
    jitter_amount = delay * 0.25
    delay = delay + random.uniform(-jitter_amount, jitter_amount)
    return max(0.1, delay)


def retry_database_operation(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    on_retry: Callable[[int, Exception, float], None] | None = None,
):
    """
    Decorator for database operations with transient-error filtering.

    Only retries on transient database errors (connection, timeout, deadlock).
    Non-retryable errors (syntax errors, constraint violations) fail immediately.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Upper bound for a single delay in seconds (default: 60.0)
        on_retry: Callback function(attempt, exception, delay) called on each retry
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            func_name = getattr(func, "__name__", "function")

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_db_exception(e):
                        logger.error(
                            f"Non-retryable database error in {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = _backoff_delay(attempt, base_delay, max_delay)
                    logger.warning(
                        f"Retryable database error in {func_name} "
                        f"(attempt {attempt + 1}/{max_retries}): "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        try:
                            on_retry(attempt + 1, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    time.sleep(delay)

            raise RuntimeError(f"Unexpected error in retry logic for {func_name}")

        return wrapper
    return decorator
