"""
Database type enumeration for type-safe dialect handling.

Replaces hardcoded 'postgresql' and 'sqlserver' strings when generating
placeholders, quoting identifiers and limiting result sets.
"""

from enum import Enum
from typing import Any

from .sql_safety import quote_identifier, quote_qualified_name, validate_integer_param


class DatabaseType(str, Enum):
    """
    Enumeration of supported database types.

    Inherits from str for JSON serialization compatibility and
    easy comparison with string values.
    """

    POSTGRESQL = "postgresql"
    SQLSERVER = "sqlserver"

    @classmethod
    def parse(cls, value: "str | DatabaseType") -> "DatabaseType":
        """
        Parse a configured database type, accepting common aliases.

        Raises:
            ValueError: If the value names no supported database
        """
        if isinstance(value, DatabaseType):
            return value

        aliases = {
            "postgresql": cls.POSTGRESQL,
            "postgres": cls.POSTGRESQL,
            "pg": cls.POSTGRESQL,
            "sqlserver": cls.SQLSERVER,
            "mssql": cls.SQLSERVER,
        }
        try:
            return aliases[str(value).strip().lower()]
        except KeyError:
            raise ValueError(
                f"Unsupported database type: {value!r}. "
                "Must be 'sqlserver' or 'postgresql'."
            ) from None

    @classmethod
    def from_connection(cls, connection: Any) -> "DatabaseType":
        """
        Detect database type from the driver module of a connection.

        Anything that is not a psycopg connection is treated as SQL Server.
        """
        module = type(connection).__module__.lower()
        if "psycopg" in module:
            return cls.POSTGRESQL
        return cls.SQLSERVER

    @property
    def placeholder(self) -> str:
        """DB-API parameter marker (psycopg2 uses pyformat, pyodbc uses qmark)."""
        if self == DatabaseType.POSTGRESQL:
            return "%s"
        return "?"

    def quote(self, identifier: str) -> str:
        """Quote a single identifier for this dialect."""
        return quote_identifier(identifier, self.value)

    def qualified(self, schema: str | None, table: str) -> str:
        """Quote a schema-qualified table name for this dialect."""
        return quote_qualified_name(schema, table, self.value)

    def limited_select(self, select_list: str, rest: str, limit: int) -> str:
        """
        Build ``SELECT ... <rest>`` returning at most ``limit`` rows.

        Args:
            select_list: Column list (already quoted)
            rest: FROM / WHERE / ORDER BY clauses
            limit: Maximum number of rows
        """
        validate_integer_param(limit, "limit", min_value=0)
        if self == DatabaseType.POSTGRESQL:
            return f"SELECT {select_list} {rest} LIMIT {limit}"
        return f"SELECT TOP ({limit}) {select_list} {rest}"
