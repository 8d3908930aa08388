"""
Exception hierarchy for table reconciliation.

Every failure of a run is one of these; the run engine turns them into a
failed ``RunResult`` carrying the exception type and message.
"""

from utils.retry import is_retryable_db_exception


class MirrorError(Exception):
    """Base class for reconciliation errors."""


class ConfigurationError(MirrorError):
    """Malformed mapping, unknown primary-key column or invalid identifier."""


class TransientIOError(MirrorError):
    """Connection drop or timeout while reading or writing; the run is failed, not retried."""


class DataShapeError(MirrorError):
    """A row is missing a key column, has a null key, or source/target columns disagree."""


class ChunkWriteError(MirrorError):
    """A non-transient database error while merging a chunk."""


class CleanupError(MirrorError):
    """Orphan deletion failed; merge chunks already committed stay committed."""


class RunCancelled(MirrorError):
    """The run was cancelled at a chunk boundary; committed chunks stay committed."""


def wrap_db_error(exc: Exception, action: str, fallback: type[MirrorError] = ChunkWriteError) -> MirrorError:
    """
    Classify a driver exception.

    Args:
        exc: Exception raised by the DB-API driver
        action: What was being done, for the message ("fetching source page")
        fallback: Type used for non-transient errors

    Returns:
        ``TransientIOError`` for transient errors, ``fallback`` otherwise
    """
    if isinstance(exc, MirrorError):
        return exc
    if is_retryable_db_exception(exc):
        return TransientIOError(f"Transient error {action}: {exc}")
    return fallback(f"Error {action}: {type(exc).__name__}: {exc}")

