"""
Source and target table endpoints.

The reconciliation core only talks to these interfaces. ``DbApiSource`` and
``DbApiTarget`` implement them over a DB-API connection (pyodbc for SQL
Server, psycopg2 for a PostgreSQL source); tests substitute in-memory ones.
"""

import logging
from collections.abc import Sequence
from typing import Any

from opentelemetry import trace

from utils.database_types import DatabaseType
from utils.tracing import trace_operation

from .errors import ConfigurationError, MirrorError, wrap_db_error
from .rows import KeyProjection, Row, TableSchema, normalize_key_value
from .sql import (
    MergePlan,
    identity_columns_query,
    keyset_params,
    page_query,
    point_lookup_query,
    row_estimate_query,
    schema_probe_query,
)
from .writer import MergeWriter

logger = logging.getLogger(__name__)


class SourceEndpoint:
    """
    A table read in primary-key order.

    Subclasses implement ``describe`` and ``fetch_page``.
    """

    def __init__(self, schema: str | None, table: str, key_columns: Sequence[str]):
        self.schema_name = schema
        self.table = table
        self.key_columns = tuple(key_columns)

    @property
    def label(self) -> str:
        return f"{self.schema_name}.{self.table}" if self.schema_name else self.table

    def describe(self) -> TableSchema:
        """Columns of the table, in table order."""
        raise NotImplementedError

    def fetch_page(self, after_key: tuple | None, limit: int) -> list[Row]:
        """
        Up to ``limit`` rows with key strictly greater than ``after_key``
        (from the start when None), ascending by key.
        """
        raise NotImplementedError


class TargetEndpoint(SourceEndpoint):
    """A table that is also written: keyed lookups, key scans and a merge writer."""

    def fetch_by_key(self, key: tuple) -> Row | None:
        raise NotImplementedError

    def fetch_key_page(self, after_key: tuple | None, limit: int) -> list[tuple]:
        """Like ``fetch_page`` but returns only key tuples."""
        raise NotImplementedError

    def estimate_row_count(self) -> int:
        raise NotImplementedError

    def identity_columns(self) -> list[str]:
        """Names of IDENTITY columns (empty when the table has none)."""
        return []

    def open_writer(self, plan: MergePlan):
        """Writer applying ``plan`` to this table (``MergeWriter`` interface)."""
        raise NotImplementedError


class DbApiSource(SourceEndpoint):
    """
    Source endpoint over a DB-API connection.

    The dialect (placeholder style, TOP vs LIMIT, quoting) follows the
    connection's driver unless ``db_type`` is given.
    """

    def __init__(
        self,
        connection: Any,
        schema: str | None,
        table: str,
        key_columns: Sequence[str],
        db_type: DatabaseType | str | None = None,
    ):
        super().__init__(schema, table, key_columns)
        self.connection = connection
        self.db_type = (
            DatabaseType.parse(db_type) if db_type else DatabaseType.from_connection(connection)
        )
        self._schema: TableSchema | None = None
        self._projection = KeyProjection(self.key_columns)

    def _execute(self, sql: str, params: Sequence[Any], action: str, fetch: str = "all"):
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, list(params))
            description = cursor.description
            if fetch == "one":
                rows = cursor.fetchone()
            elif fetch == "none":
                rows = None
            else:
                rows = cursor.fetchall()
            return description, rows
        except MirrorError:
            raise
        except Exception as e:
            raise wrap_db_error(e, f"{action} {self.label}", fallback=MirrorError) from e
        finally:
            cursor.close()

    def describe(self) -> TableSchema:
        if self._schema is None:
            description, _ = self._execute(
                schema_probe_query(self.db_type, self.schema_name, self.table),
                [],
                "describing",
            )
            if not description:
                raise ConfigurationError(f"Table {self.label} returned no column description")
            self._schema = TableSchema.from_description(description)
            self._projection.check(self._schema, self.label)
            logger.debug(f"Discovered {self.label}: {', '.join(self._schema.names)}")
        return self._schema

    def _page_params(self, after_key: tuple | None) -> list[Any]:
        return keyset_params(after_key) if after_key is not None else []

    def fetch_page(self, after_key: tuple | None, limit: int) -> list[Row]:
        schema = self.describe()
        sql = page_query(
            self.db_type, self.schema_name, self.table, self.key_columns, limit,
            after_key=after_key is not None,
        )
        with trace_operation(
            "mirror.fetch_page", kind=trace.SpanKind.CLIENT, table=self.label, limit=limit
        ) as span:
            _, records = self._execute(sql, self._page_params(after_key), "fetching page from")
            span.set_attribute("rows", len(records))
        return [Row(schema, record) for record in records]


class DbApiTarget(DbApiSource, TargetEndpoint):
    """Target endpoint over a pyodbc SQL Server connection."""

    def fetch_by_key(self, key: tuple) -> Row | None:
        schema = self.describe()
        _, record = self._execute(
            point_lookup_query(self.db_type, self.schema_name, self.table, self.key_columns),
            key,
            "looking up key in",
            fetch="one",
        )
        return None if record is None else Row(schema, record)

    def fetch_key_page(self, after_key: tuple | None, limit: int) -> list[tuple]:
        sql = page_query(
            self.db_type, self.schema_name, self.table, self.key_columns, limit,
            after_key=after_key is not None, columns=self.key_columns,
        )
        _, records = self._execute(sql, self._page_params(after_key), "scanning keys of")
        return [tuple(normalize_key_value(value) for value in record) for record in records]

    def estimate_row_count(self) -> int:
        sql, params = row_estimate_query(self.db_type, self.schema_name, self.table)
        _, record = self._execute(sql, params, "estimating size of", fetch="one")
        return int(record[0]) if record and record[0] is not None else 0

    def identity_columns(self) -> list[str]:
        if self.db_type != DatabaseType.SQLSERVER:
            return []
        sql, params = identity_columns_query(self.schema_name, self.table)
        _, records = self._execute(sql, params, "reading identity columns of")
        return [record[0] for record in records]

    def open_writer(self, plan: MergePlan):
        if self.db_type != DatabaseType.SQLSERVER:
            raise ConfigurationError(
                f"Target {self.label} must be SQL Server, got {self.db_type.value}"
            )
        return MergeWriter(self.connection, plan)
