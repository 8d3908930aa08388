"""
SQL safety utilities for preventing SQL injection.

Database drivers can bind row values but not structural identifiers, so every
schema, table and column name that ends up in generated SQL text is validated
against a strict allow-list and then quoted for the target dialect.
"""

import re
from typing import Literal

# Strict ASCII-only pattern for SQL identifiers (no Unicode via \w)
VALID_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

DialectName = Literal["postgresql", "sqlserver"]


def validate_identifier(identifier: str, kind: str = "identifier") -> str:
    """
    Validate a SQL identifier (schema, table or column name).

    Args:
        identifier: The identifier to validate
        kind: What the identifier names, used in the error message

    Returns:
        The identifier, unchanged

    Raises:
        ValueError: If the identifier is empty or contains invalid characters
    """
    if not identifier or not isinstance(identifier, str):
        raise ValueError(f"SQL {kind} cannot be empty")

    if not VALID_IDENTIFIER.match(identifier):
        raise ValueError(
            f"Invalid SQL {kind}: {identifier!r}. "
            "Only ASCII letters, digits, and underscores are allowed, "
            "and must start with a letter or underscore."
        )
    return identifier


def quote_identifier(identifier: str, db_type: DialectName) -> str:
    """
    Safely quote a SQL identifier after validation.

    Args:
        identifier: The identifier to quote
        db_type: Database type for proper quoting style

    Returns:
        Quoted identifier safe for use in SQL

    Raises:
        ValueError: If the identifier is invalid
    """
    validate_identifier(identifier)

    if db_type == "postgresql":
        return f'"{identifier}"'
    return f"[{identifier}]"


def quote_qualified_name(
    schema: str | None, table: str, db_type: DialectName
) -> str:
    """
    Quote a schema-qualified table name.

    Args:
        schema: Schema name, or None for an unqualified table
        table: Table name
        db_type: Database type for proper quoting style

    Returns:
        ``[schema].[table]`` / ``"schema"."table"`` (or just the table)
    """
    quoted_table = quote_identifier(table, db_type)
    if not schema:
        return quoted_table
    return f"{quote_identifier(schema, db_type)}.{quote_identifier(table, db_type)}"


def validate_integer_param(value: int, param_name: str, min_value: int = 0) -> int:
    """
    Validate an integer that is rendered into SQL text (page sizes).

    Raises:
        ValueError: If the value is not a valid integer or below minimum
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(
            f"Invalid {param_name}: {value!r}. Must be an integer."
        )

    if value < min_value:
        raise ValueError(
            f"Invalid {param_name}: {value}. Must be >= {min_value}."
        )
    return value
