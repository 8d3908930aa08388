"""
Structured logging for table-mirror.

Console output is human readable (optionally colored); JSON output carries
the record's ``extra`` fields under ``context`` so mapping labels, chunk
numbers and counts can be queried by a log pipeline.

Usage:
    from utils.logging import setup_logging, ContextLogger

    setup_logging(level="INFO", json_format=True)

    log = ContextLogger(__name__, mapping="dbo.customers")
    log.info("Chunk committed", chunk=3, rows=100)
"""

from .config import configure_from_env, get_logger, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "configure_from_env",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]
