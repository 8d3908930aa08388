"""
SQL text for keyset paging, point lookups, merge and delete.

Only structural identifiers are interpolated, after allow-list validation
and dialect quoting; every row value is a bound parameter.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from utils.database_types import DatabaseType

from .errors import ConfigurationError, DataShapeError
from .mapping import TableMapping
from .rows import Row, TableSchema

logger = logging.getLogger(__name__)

UTC_NOW = "SYSUTCDATETIME()"


def _quoted(db_type: DatabaseType, names: Sequence[str]) -> list[str]:
    try:
        return [db_type.quote(name) for name in names]
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def keyset_predicate(db_type: DatabaseType, key_columns: Sequence[str]) -> str:
    """
    Predicate selecting keys strictly greater than a given key tuple.

    ``(a, b) > (?, ?)`` expands to ``(a > ?) OR (a = ? AND b > ?)``, which
    both dialects can satisfy from the primary-key index. Bind it with
    ``keyset_params``.
    """
    quoted = _quoted(db_type, key_columns)
    p = db_type.placeholder
    clauses = []
    for i, column in enumerate(quoted):
        terms = [f"{prefix} = {p}" for prefix in quoted[:i]]
        terms.append(f"{column} > {p}")
        clauses.append("(" + " AND ".join(terms) + ")")
    return " OR ".join(clauses)


def keyset_params(last_key: Sequence[Any]) -> list[Any]:
    """Parameters for ``keyset_predicate``: ``last[:i] + [last[i]]`` for each i."""
    params: list[Any] = []
    for i in range(len(last_key)):
        params.extend(last_key[: i + 1])
    return params


def _order_by(db_type: DatabaseType, key_columns: Sequence[str]) -> str:
    return "ORDER BY " + ", ".join(f"{column} ASC" for column in _quoted(db_type, key_columns))


def page_query(
    db_type: DatabaseType,
    schema: str | None,
    table: str,
    key_columns: Sequence[str],
    limit: int,
    after_key: bool,
    columns: Sequence[str] | None = None,
) -> str:
    """
    One keyset page ordered by the primary key.

    Args:
        columns: Columns to select; None selects all, preserving table order
        after_key: Add the keyset predicate (every page but the first)
    """
    select_list = ", ".join(_quoted(db_type, columns)) if columns else "*"
    rest = f"FROM {db_type.qualified(schema, table)}"
    if after_key:
        rest += f" WHERE {keyset_predicate(db_type, key_columns)}"
    rest += " " + _order_by(db_type, key_columns)
    return db_type.limited_select(select_list, rest, limit)


def point_lookup_query(
    db_type: DatabaseType, schema: str | None, table: str, key_columns: Sequence[str]
) -> str:
    p = db_type.placeholder
    where = " AND ".join(f"{column} = {p}" for column in _quoted(db_type, key_columns))
    return f"SELECT * FROM {db_type.qualified(schema, table)} WHERE {where}"


def schema_probe_query(db_type: DatabaseType, schema: str | None, table: str) -> str:
    """Query returning no rows whose cursor description lists the table's columns."""
    return db_type.limited_select("*", f"FROM {db_type.qualified(schema, table)}", 0)


def row_estimate_query(db_type: DatabaseType, schema: str | None, table: str) -> tuple[str, list[Any]]:
    """
    Cheap row count estimate.

    SQL Server reads the partition metadata of the heap/clustered index;
    other databases fall back to ``COUNT(*)``.
    """
    if db_type == DatabaseType.SQLSERVER:
        return (
            "SELECT COALESCE(SUM(p.rows), 0) FROM sys.partitions AS p "
            "WHERE p.object_id = OBJECT_ID(?) AND p.index_id IN (0, 1)",
            [db_type.qualified(schema, table)],
        )
    return f"SELECT COUNT(*) FROM {db_type.qualified(schema, table)}", []


def identity_columns_query(schema: str | None, table: str) -> tuple[str, list[Any]]:
    return (
        "SELECT name FROM sys.identity_columns WHERE object_id = OBJECT_ID(?)",
        [DatabaseType.SQLSERVER.qualified(schema, table)],
    )


@dataclass(frozen=True)
class MergePlan:
    """
    Statements for writing one mapping's target, built once per run.

    Attributes:
        merge_sql: Single-row ``MERGE`` bound once per row via ``executemany``
        delete_sql: Delete-by-primary-key bound once per key
        source_columns: Source column names, in parameter order
        target_columns: The same columns as spelled on the target
        key_columns: Target spelling of the primary-key columns
        identity_insert: A written column is the target's identity column
        identity_on_sql / identity_off_sql: ``SET IDENTITY_INSERT`` toggles
    """

    table: str
    merge_sql: str
    delete_sql: str
    source_columns: tuple[str, ...]
    target_columns: tuple[str, ...]
    key_columns: tuple[str, ...]
    identity_insert: bool = False
    identity_on_sql: str | None = None
    identity_off_sql: str | None = None

    def parameters(self, row: Row) -> tuple:
        """Bound values of ``row`` for ``merge_sql``."""
        try:
            return tuple(row[name] for name in self.source_columns)
        except KeyError as e:
            raise DataShapeError(f"Row is missing column {e.args[0]!r} for {self.table}") from e


def resolve_target_columns(source: TableSchema, target: TableSchema, label: str) -> list[str]:
    """
    Target spelling of every source column.

    Raises:
        DataShapeError: If a source column does not exist on the target
    """
    resolved = []
    missing = []
    for name in source.names:
        match = target.resolve(name)
        if match is None:
            missing.append(name)
        else:
            resolved.append(match)
    if missing:
        raise DataShapeError(
            f"{label}: source column(s) {', '.join(missing)} do not exist on the target"
        )
    return resolved


def build_merge_plan(
    mapping: TableMapping,
    source_schema: TableSchema,
    target_schema: TableSchema,
    identity_columns: Sequence[str] = (),
) -> MergePlan:
    """
    Build the SQL Server merge and delete statements for ``mapping``.

    Every source column is written. On match the non-key columns are updated
    (identity columns excepted, SQL Server cannot update them) and the
    modification column is stamped; on no match the row is inserted with the
    creation column stamped. A stamp column is only used when the target has
    it and the source does not.

    Raises:
        DataShapeError: If source and target columns disagree
        ConfigurationError: If an identifier fails validation
    """
    db = DatabaseType.SQLSERVER
    target_columns = resolve_target_columns(source_schema, target_schema, mapping.label)
    key_columns = [target_schema.resolve(name) for name in mapping.primary_key]
    if None in key_columns:
        raise ConfigurationError(
            f"{mapping.label}: primary key {', '.join(mapping.primary_key)} not found on the target"
        )

    def stamp(column: str | None) -> str | None:
        if not column or source_schema.has(column):
            return None
        return target_schema.resolve(column)

    created_column = stamp(mapping.created_column)
    modified_column = stamp(mapping.modified_column)

    extra = [
        name for name in target_schema.names
        if name not in target_columns and name not in (created_column, modified_column)
    ]
    if extra:
        logger.warning(
            f"{mapping.label}: target column(s) {', '.join(extra)} are not in the source "
            "and will keep their current values"
        )

    identity = {name.lower() for name in identity_columns}
    folded_keys = {name.lower() for name in key_columns}

    table = db.qualified(mapping.target_schema, mapping.target_table)
    cols = _quoted(db, target_columns)
    keys = _quoted(db, key_columns)

    on_clause = " AND ".join(f"target.{k} = source.{k}" for k in keys)
    set_items = [
        f"target.{db.quote(name)} = source.{db.quote(name)}"
        for name in target_columns
        if name.lower() not in folded_keys and name.lower() not in identity
    ]
    if modified_column:
        set_items.append(f"target.{db.quote(modified_column)} = {UTC_NOW}")

    insert_columns = list(cols)
    insert_values = [f"source.{c}" for c in cols]
    if created_column:
        insert_columns.append(db.quote(created_column))
        insert_values.append(UTC_NOW)

    parts = [
        f"MERGE INTO {table} WITH (HOLDLOCK) AS target",
        f"USING (VALUES ({', '.join('?' for _ in cols)})) AS source ({', '.join(cols)})",
        f"ON {on_clause}",
    ]
    if set_items:
        parts.append(f"WHEN MATCHED THEN UPDATE SET {', '.join(set_items)}")
    parts.append(
        f"WHEN NOT MATCHED THEN INSERT ({', '.join(insert_columns)}) "
        f"VALUES ({', '.join(insert_values)});"
    )
    merge_sql = "\n".join(parts)

    delete_sql = f"DELETE FROM {table} WHERE " + " AND ".join(f"{k} = ?" for k in keys)

    identity_insert = any(name.lower() in identity for name in target_columns)

    return MergePlan(
        table=table,
        merge_sql=merge_sql,
        delete_sql=delete_sql,
        source_columns=tuple(source_schema.names),
        target_columns=tuple(target_columns),
        key_columns=tuple(key_columns),
        identity_insert=identity_insert,
        identity_on_sql=f"SET IDENTITY_INSERT {table} ON" if identity_insert else None,
        identity_off_sql=f"SET IDENTITY_INSERT {table} OFF" if identity_insert else None,
    )
