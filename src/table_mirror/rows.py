"""
Row model: typed column values over a per-table schema.

Schemas are discovered from the cursor description at run start; rows store
their values positionally and share the schema of the page they came from.
"""

import datetime
import decimal
import re
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ConfigurationError, DataShapeError

FLOAT_TOLERANCE = 1e-9


class ValueKind(str, Enum):
    """Kind of a column value."""

    NULL = "null"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    TEXT = "text"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    BINARY = "binary"
    UNKNOWN = "unknown"


# pyodbc reports Python types as description type codes
_PYTHON_TYPE_KINDS = {
    bool: ValueKind.BOOLEAN,
    int: ValueKind.INTEGER,
    float: ValueKind.FLOAT,
    decimal.Decimal: ValueKind.DECIMAL,
    str: ValueKind.TEXT,
    datetime.datetime: ValueKind.TIMESTAMP,
    datetime.date: ValueKind.DATE,
    bytes: ValueKind.BINARY,
    bytearray: ValueKind.BINARY,
}

# psycopg2 reports PostgreSQL type OIDs
_PG_OID_KINDS = {
    16: ValueKind.BOOLEAN,
    17: ValueKind.BINARY,
    20: ValueKind.INTEGER,
    21: ValueKind.INTEGER,
    23: ValueKind.INTEGER,
    25: ValueKind.TEXT,
    700: ValueKind.FLOAT,
    701: ValueKind.FLOAT,
    1042: ValueKind.TEXT,
    1043: ValueKind.TEXT,
    1082: ValueKind.DATE,
    1114: ValueKind.TIMESTAMP,
    1184: ValueKind.TIMESTAMP,
    1700: ValueKind.DECIMAL,
}


def kind_of(value: Any) -> ValueKind:
    """Kind of a Python value as returned by a DB-API driver."""
    if value is None:
        return ValueKind.NULL
    # bool before int, datetime before date: both are subclasses
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.FLOAT
    if isinstance(value, decimal.Decimal):
        return ValueKind.DECIMAL
    if isinstance(value, str):
        return ValueKind.TEXT
    if isinstance(value, datetime.datetime):
        return ValueKind.TIMESTAMP
    if isinstance(value, datetime.date):
        return ValueKind.DATE
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BINARY
    return ValueKind.UNKNOWN


def kind_of_type(type_code: Any) -> ValueKind:
    """Kind of a ``cursor.description`` type code (pyodbc type or psycopg2 OID)."""
    if isinstance(type_code, type):
        return _PYTHON_TYPE_KINDS.get(type_code, ValueKind.UNKNOWN)
    if isinstance(type_code, int):
        return _PG_OID_KINDS.get(type_code, ValueKind.UNKNOWN)
    return ValueKind.UNKNOWN


def _is_binary(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray, memoryview))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, decimal.Decimal)) and not isinstance(value, bool)


def values_equal(left: Any, right: Any, tolerance: float = FLOAT_TOLERANCE) -> bool:
    """
    Compare two column values.

    Null equals only null; floats (and a float against another number) are
    equal within ``tolerance``; binary values compare as bytes; everything
    else uses ``==``.
    """
    if left is None or right is None:
        return left is None and right is None

    if (isinstance(left, float) or isinstance(right, float)) and _is_number(left) and _is_number(right):
        return abs(float(left) - float(right)) <= tolerance

    if _is_binary(left) and _is_binary(right):
        return bytes(left) == bytes(right)

    return left == right


def is_newer(candidate: Any, reference: Any) -> bool:
    """True when ``candidate`` is strictly greater than ``reference``; incomparable values are not newer."""
    if candidate is None or reference is None:
        return False
    try:
        return candidate > reference
    except TypeError:
        return False


def normalize_key_value(value: Any) -> Any:
    """Make a key value hashable and order-stable (binary becomes ``bytes``)."""
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


_UUID_TEXT = re.compile(
    r"^\{?[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\}?$"
)

# Key components whose Python ordering matches the database's index order.
_ORDERED_KEY_TYPES = (int, float, decimal.Decimal, datetime.date, datetime.time)


def canonical_key_value(value: Any) -> Any:
    """
    Identity form of a key value, equal for values the database treats as equal.

    Drivers disagree on UUID text: psycopg2 returns lowercase strings, pyodbc
    returns uppercase ``uniqueidentifier`` strings or ``uuid.UUID`` objects.
    All of them become the lowercase hyphenated form without braces.

    Args:
        value: Key value as returned by a driver

    Returns:
        Hashable value to compare keys across endpoints
    """
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str) and len(value) in (36, 38) and _UUID_TEXT.match(value):
        return value.strip("{}").lower()
    return normalize_key_value(value)


def canonical_key(key: Sequence[Any]) -> tuple:
    """Key tuple with every component in ``canonical_key_value`` form."""
    return tuple(canonical_key_value(value) for value in key)


def key_order_matches_python(key: Sequence[Any]) -> bool:
    """
    True when sorting such keys in Python gives the database's order.

    Text, UUID and binary keys sort by collation rules on the server (case,
    punctuation, byte groups), so only numeric and temporal components qualify.
    """
    return all(
        isinstance(value, _ORDERED_KEY_TYPES) and not isinstance(value, bool) for value in key
    )


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    kind: ValueKind = ValueKind.UNKNOWN


class TableSchema:
    """
    Ordered column descriptors of a table.

    Column lookup is exact first, then case-insensitive, matching SQL Server's
    default collation for identifiers.
    """

    def __init__(self, columns: Iterable[ColumnSchema]):
        self.columns: tuple[ColumnSchema, ...] = tuple(columns)
        self._index = {column.name: i for i, column in enumerate(self.columns)}
        self._folded = {column.name.lower(): i for i, column in enumerate(self.columns)}

    @classmethod
    def from_description(cls, description: Sequence[Sequence[Any]]) -> "TableSchema":
        """Build a schema from a DB-API ``cursor.description``."""
        return cls(ColumnSchema(entry[0], kind_of_type(entry[1])) for entry in description)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "TableSchema":
        return cls(ColumnSchema(name) for name in names)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def index_of(self, name: str) -> int | None:
        index = self._index.get(name)
        if index is None:
            index = self._folded.get(name.lower())
        return index

    def has(self, name: str) -> bool:
        return self.index_of(name) is not None

    def resolve(self, name: str) -> str | None:
        """Actual spelling of ``name`` in this schema, or None."""
        index = self.index_of(name)
        return None if index is None else self.columns[index].name

    def __len__(self) -> int:
        return len(self.columns)

    def __iter__(self) -> Iterator[ColumnSchema]:
        return iter(self.columns)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TableSchema) and self.columns == other.columns

    def __hash__(self) -> int:
        return hash(self.columns)

    def __repr__(self) -> str:
        return f"TableSchema({', '.join(self.names)})"


class Row:
    """A fetched row: values positionally aligned with ``schema``."""

    __slots__ = ("schema", "values")

    def __init__(self, schema: TableSchema, values: Sequence[Any]):
        if len(values) != len(schema):
            raise DataShapeError(
                f"Row has {len(values)} values but schema has {len(schema)} columns"
            )
        self.schema = schema
        self.values = tuple(values)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], schema: TableSchema | None = None) -> "Row":
        if schema is None:
            schema = TableSchema(ColumnSchema(name, kind_of(value)) for name, value in data.items())
        return cls(schema, [data.get(name) for name in schema.names])

    @property
    def columns(self) -> tuple[str, ...]:
        return self.schema.names

    def get(self, name: str, default: Any = None) -> Any:
        index = self.schema.index_of(name)
        return default if index is None else self.values[index]

    def __getitem__(self, name: str) -> Any:
        index = self.schema.index_of(name)
        if index is None:
            raise KeyError(name)
        return self.values[index]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.schema.has(name)

    def __len__(self) -> int:
        return len(self.values)

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.schema.names, self.values))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self) -> str:
        return f"Row({self.as_dict()!r})"


class KeyProjection:
    """
    Projects rows onto their primary-key values, in declared key order.

    Source and target each get their own projection (their column spelling
    may differ in case) but share the declared order, so the tuples compare.
    """

    def __init__(self, key_columns: Sequence[str]):
        if not key_columns:
            raise ConfigurationError("Primary key must name at least one column")
        self.key_columns = tuple(key_columns)

    def check(self, schema: TableSchema, side: str) -> None:
        """
        Raise ``ConfigurationError`` if ``schema`` lacks a key column.
        """
        missing = [name for name in self.key_columns if not schema.has(name)]
        if missing:
            raise ConfigurationError(
                f"Primary key column(s) {', '.join(missing)} not found in {side} table "
                f"(columns: {', '.join(schema.names)})"
            )

    def project(self, row: Row) -> tuple:
        """
        Key tuple of ``row``.

        Raises:
            DataShapeError: If a key column is missing or null
        """
        key = []
        for name in self.key_columns:
            index = row.schema.index_of(name)
            if index is None:
                raise DataShapeError(f"Row is missing primary key column {name!r}")
            value = row.values[index]
            if value is None:
                raise DataShapeError(f"Row has null primary key column {name!r}")
            key.append(normalize_key_value(value))
        return tuple(key)
