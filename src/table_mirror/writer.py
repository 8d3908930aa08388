"""
Transactional merge writer for a SQL Server target.
"""

import logging
from collections.abc import Sequence

from opentelemetry import trace

from utils.tracing import trace_operation

from .errors import CleanupError, wrap_db_error
from .rows import Row
from .sql import MergePlan

logger = logging.getLogger(__name__)


class MergeWriter:
    """
    Applies chunks of Insert/Update rows with the plan's ``MERGE`` statement.

    The connection is switched to manual commit: each chunk is one
    transaction, committed on success and rolled back on any failure.
    ``SET IDENTITY_INSERT ... OFF`` is always issued after an ON, whether or
    not the merge succeeded.
    """

    def __init__(self, connection, plan: MergePlan):
        self.connection = connection
        self.plan = plan
        self.connection.autocommit = False

    def _rollback(self) -> None:
        try:
            self.connection.rollback()
        except Exception as e:
            logger.error(f"Rollback on {self.plan.table} failed: {e}")

    def write_chunk(self, rows: Sequence[Row]) -> int:
        """
        Merge ``rows`` in one transaction.

        Returns:
            Number of rows written

        Raises:
            TransientIOError: Connection loss or timeout; the chunk was rolled back
            ChunkWriteError: Any other database error; the chunk was rolled back
            DataShapeError: A row lacks a planned column; nothing was sent
        """
        if not rows:
            return 0

        params = [self.plan.parameters(row) for row in rows]

        with trace_operation(
            "mirror.write_chunk",
            kind=trace.SpanKind.CLIENT,
            table=self.plan.table,
            rows=len(params),
            identity_insert=self.plan.identity_insert,
        ):
            cursor = self.connection.cursor()
            try:
                if self.plan.identity_insert:
                    cursor.execute(self.plan.identity_on_sql)
                try:
                    cursor.fast_executemany = True
                    cursor.executemany(self.plan.merge_sql, params)
                finally:
                    if self.plan.identity_insert:
                        cursor.execute(self.plan.identity_off_sql)
                self.connection.commit()
            except Exception as e:
                self._rollback()
                raise wrap_db_error(e, f"merging {len(params)} rows into {self.plan.table}") from e
            finally:
                cursor.close()

        logger.debug(f"Merged {len(params)} rows into {self.plan.table}")
        return len(params)

    def delete_keys(self, keys: Sequence[tuple]) -> int:
        """
        Delete the rows with the given primary keys in one transaction.

        Raises:
            CleanupError: On any database error; the batch was rolled back
        """
        if not keys:
            return 0

        cursor = self.connection.cursor()
        try:
            cursor.executemany(self.plan.delete_sql, [tuple(key) for key in keys])
            self.connection.commit()
        except Exception as e:
            self._rollback()
            raise CleanupError(
                f"Deleting {len(keys)} orphan rows from {self.plan.table} failed: "
                f"{type(e).__name__}: {e}"
            ) from e
        finally:
            cursor.close()

        logger.debug(f"Deleted {len(keys)} orphan rows from {self.plan.table}")
        return len(keys)

    def close(self) -> None:
        """Discard any open transaction and restore autocommit."""
        self._rollback()
        try:
            self.connection.autocommit = True
        except Exception as e:
            logger.warning(f"Could not restore autocommit on {self.plan.table}: {e}")
