"""
Table mirroring: make a SQL Server target table an exact copy of a source table

The source table is streamed in primary-key order and diffed against the
target page by page; inserts and updates are merged chunk by chunk and, once
the whole source has been read, target rows whose keys were never seen are
deleted.

Components:
- engine: Reconciliation run state machine and RunResult
- service: Runs every table mapping, sequentially or on a thread pool
- mapping: Table mapping descriptors and run settings
- report: Console / JSON / CSV run reports
- scheduler: Periodic runs with APScheduler

Usage:
    from table_mirror import MirrorService, PooledEndpointFactory, load_table_mappings

    service = MirrorService(PooledEndpointFactory())
    results = service.run_all(load_table_mappings("table-update.json"))
"""

from .engine import ReconciliationRun, RunResult, RunState
from .errors import (
    ChunkWriteError,
    CleanupError,
    ConfigurationError,
    DataShapeError,
    MirrorError,
    RunCancelled,
    TransientIOError,
)
from .mapping import MirrorSettings, TableMapping, load_table_mappings, parse_table_mappings
from .service import MirrorService, PooledEndpointFactory

__version__ = "1.0.0"
__all__ = [
    "ReconciliationRun",
    "RunResult",
    "RunState",
    "MirrorService",
    "PooledEndpointFactory",
    "MirrorSettings",
    "TableMapping",
    "load_table_mappings",
    "parse_table_mappings",
    "MirrorError",
    "ConfigurationError",
    "TransientIOError",
    "DataShapeError",
    "ChunkWriteError",
    "CleanupError",
    "RunCancelled",
]
