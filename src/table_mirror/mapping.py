"""
Table mapping descriptors and run settings.

Descriptors are loaded from JSON or YAML. The file holds either a list of
database groups::

    [
      {
        "sourceDatabase": "Sales",
        "targetDatabase": "Sales_bronze",
        "tablesForChanges": [
          {"sourceSchema": "dbo", "sourceTable": "Customer",
           "primaryKey": ["CustomerId"],
           "targetSchema": "bronze", "targetTable": "Customer"}
        ]
      }
    ]

or a flat list of mapping objects (each may carry its own
``sourceDatabase``/``targetDatabase``).
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from utils.sql_safety import validate_identifier
from utils.tracing import trace_function

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STRATEGIES = ("auto", "paged", "full", "point")

_IDENTIFIER = {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"}

MAPPING_SCHEMA = {
    "type": "object",
    "required": ["sourceSchema", "sourceTable", "primaryKey", "targetSchema", "targetTable"],
    "properties": {
        "sourceSchema": _IDENTIFIER,
        "sourceTable": _IDENTIFIER,
        "targetSchema": _IDENTIFIER,
        "targetTable": _IDENTIFIER,
        "primaryKey": {"type": "array", "items": _IDENTIFIER, "minItems": 1, "uniqueItems": True},
        "sourceDatabase": _IDENTIFIER,
        "targetDatabase": _IDENTIFIER,
        "lastModifiedColumn": _IDENTIFIER,
        "createdColumn": {"anyOf": [_IDENTIFIER, {"type": "null"}]},
        "modifiedColumn": {"anyOf": [_IDENTIFIER, {"type": "null"}]},
        "deleteOrphans": {"type": "boolean"},
        "strategy": {"enum": list(STRATEGIES)},
    },
    "additionalProperties": False,
}

DESCRIPTOR_SCHEMA = {
    "type": "array",
    "items": {
        "anyOf": [
            {
                "type": "object",
                "required": ["sourceDatabase", "tablesForChanges"],
                "properties": {
                    "sourceDatabase": _IDENTIFIER,
                    "targetDatabase": _IDENTIFIER,
                    "tablesForChanges": {"type": "array", "items": MAPPING_SCHEMA},
                },
                "additionalProperties": False,
            },
            MAPPING_SCHEMA,
        ]
    },
}

_TRUTHY = ("true", "1", "yes", "on")


@dataclass(frozen=True)
class TableMapping:
    """
    One source table mirrored into one target table.

    ``target_database`` defaults to ``source_database``; both None means the
    databases of the configured connections.
    """

    source_schema: str
    source_table: str
    target_schema: str
    target_table: str
    primary_key: tuple[str, ...]
    source_database: str | None = None
    target_database: str | None = None
    last_modified_column: str | None = None
    created_column: str | None = "created_at"
    modified_column: str | None = "updated_at"
    delete_orphans: bool = True
    strategy: str = "auto"

    def __post_init__(self):
        object.__setattr__(self, "primary_key", tuple(self.primary_key))
        if not self.primary_key:
            raise ConfigurationError(f"Mapping {self.label} declares no primary key columns")
        if len(set(self.primary_key)) != len(self.primary_key):
            raise ConfigurationError(f"Mapping {self.label} repeats a primary key column")
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Mapping {self.label}: unknown strategy {self.strategy!r} "
                f"(expected one of {', '.join(STRATEGIES)})"
            )
        if self.target_database is None and self.source_database is not None:
            object.__setattr__(self, "target_database", self.source_database)

        identifiers = [
            ("schema", self.source_schema),
            ("table", self.source_table),
            ("schema", self.target_schema),
            ("table", self.target_table),
            *(("column", name) for name in self.primary_key),
            *(
                ("column", name)
                for name in (self.last_modified_column, self.created_column, self.modified_column)
                if name
            ),
            *(("database", name) for name in (self.source_database, self.target_database) if name),
        ]
        try:
            for kind, name in identifiers:
                validate_identifier(name, kind)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    @property
    def label(self) -> str:
        """``target_schema.target_table``, used in logs, metrics and reports."""
        return f"{self.target_schema}.{self.target_table}"

    @property
    def source_label(self) -> str:
        return f"{self.source_schema}.{self.source_table}"

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: dict[str, Any] | None = None) -> "TableMapping":
        """Build from a camelCase descriptor entry; ``defaults`` supplies group-level databases."""
        merged = {**(defaults or {}), **data}
        kwargs = {
            "source_schema": merged["sourceSchema"],
            "source_table": merged["sourceTable"],
            "target_schema": merged["targetSchema"],
            "target_table": merged["targetTable"],
            "primary_key": tuple(merged["primaryKey"]),
            "source_database": merged.get("sourceDatabase"),
            "target_database": merged.get("targetDatabase"),
            "last_modified_column": merged.get("lastModifiedColumn"),
            "delete_orphans": merged.get("deleteOrphans", True),
            "strategy": merged.get("strategy", "auto"),
        }
        for key, attr in (("createdColumn", "created_column"), ("modifiedColumn", "modified_column")):
            if key in merged:
                kwargs[attr] = merged[key]
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["primary_key"] = list(self.primary_key)
        return data


@dataclass
class MirrorSettings:
    """
    Tunables of a reconciliation run.

    Attributes:
        chunk_size: Source rows per committed chunk
        page_size: Rows per source/target page fetch
        delete_batch_size: Keys per orphan delete statement
        float_tolerance: Absolute tolerance for float comparison
        cleanup: Run orphan cleanup after a successful stream
    """

    chunk_size: int = 100
    page_size: int = 5000
    delete_batch_size: int = 500
    float_tolerance: float = 1e-9
    cleanup: bool = True

    def __post_init__(self):
        for name in ("chunk_size", "page_size", "delete_batch_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "MirrorSettings":
        """
        Settings from ``MIRROR_CHUNK_SIZE``, ``MIRROR_PAGE_SIZE``,
        ``MIRROR_DELETE_BATCH_SIZE`` and ``MIRROR_CLEANUP``; keyword
        overrides that are not None win.
        """
        values: dict[str, Any] = {}
        try:
            for env_name, attr in (
                ("MIRROR_CHUNK_SIZE", "chunk_size"),
                ("MIRROR_PAGE_SIZE", "page_size"),
                ("MIRROR_DELETE_BATCH_SIZE", "delete_batch_size"),
            ):
                raw = os.getenv(env_name)
                if raw:
                    values[attr] = int(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer in environment: {e}") from e

        cleanup = os.getenv("MIRROR_CLEANUP")
        if cleanup:
            values["cleanup"] = cleanup.lower() in _TRUTHY

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def _read_descriptor_file(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                return yaml.safe_load(f)
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Mapping file not found: {path}") from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse mapping file {path}: {e}") from e


def parse_table_mappings(document: Any) -> list[TableMapping]:
    """
    Validate a descriptor document and build its mappings.

    Raises:
        ConfigurationError: If the document does not match the descriptor schema
    """
    validator = jsonschema.Draft7Validator(DESCRIPTOR_SCHEMA)
    error = jsonschema.exceptions.best_match(validator.iter_errors(document))
    if error is not None:
        location = "/".join(str(part) for part in error.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid mapping descriptor at {location}: {error.message}")

    mappings: list[TableMapping] = []
    for entry in document:
        if "tablesForChanges" in entry:
            defaults = {
                key: entry[key] for key in ("sourceDatabase", "targetDatabase") if key in entry
            }
            mappings.extend(
                TableMapping.from_dict(table, defaults) for table in entry["tablesForChanges"]
            )
        else:
            mappings.append(TableMapping.from_dict(entry))

    seen: set[tuple] = set()
    for mapping in mappings:
        target = (mapping.target_database, mapping.target_schema.lower(), mapping.target_table.lower())
        if target in seen:
            raise ConfigurationError(f"Target table {mapping.label} is mapped more than once")
        seen.add(target)

    return mappings


@trace_function("mirror.load_mappings")
def load_table_mappings(path: str | Path) -> list[TableMapping]:
    """
    Load and validate table mappings from a JSON or YAML file.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    mappings = parse_table_mappings(_read_descriptor_file(path))
    logger.info(f"Loaded {len(mappings)} table mapping(s) from {path}")
    return mappings


def select_mappings(mappings: list[TableMapping], names: list[str] | None) -> list[TableMapping]:
    """
    Restrict ``mappings`` to the ones named in ``names``.

    A name matches a mapping's source or target table, bare or
    schema-qualified, case-insensitively.

    Raises:
        ConfigurationError: If a name matches no mapping
    """
    if not names:
        return list(mappings)

    wanted = {name.strip().lower() for name in names if name.strip()}
    selected = []
    matched: set[str] = set()
    for mapping in mappings:
        aliases = {
            mapping.source_table.lower(),
            mapping.target_table.lower(),
            mapping.source_label.lower(),
            mapping.label.lower(),
        }
        hits = aliases & wanted
        if hits:
            selected.append(mapping)
            matched |= hits

    unknown = wanted - matched
    if unknown:
        raise ConfigurationError(f"No mapping for table(s): {', '.join(sorted(unknown))}")
    return selected
