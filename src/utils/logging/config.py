"""
Application-wide logging setup.

Handlers are attached to the root logger so every module logger created with
``logging.getLogger(__name__)`` inherits them.
"""

import logging
import logging.handlers
import os
import sys

from .formatters import ConsoleFormatter, JSONFormatter

APP_NAME = "table-mirror"

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("urllib3", "requests", "apscheduler.executors", "opentelemetry")

_TRUTHY = ("true", "1", "yes")


def _formatter(json_format: bool, app_name: str, colored: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter(include_timestamp=True, include_hostname=True, app_name=app_name)
    if colored:
        return ConsoleFormatter(use_colors=True)
    return logging.Formatter(fmt=PLAIN_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    console_output: bool = True,
    json_format: bool = False,
    app_name: str = APP_NAME,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure the root logger.

    Existing root handlers are replaced, so calling this twice (CLI startup,
    then a scheduler re-configuring) does not duplicate output.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path of a rotating log file, or None to disable file logging
        console_output: Emit to stderr
        json_format: Emit JSON records instead of text
        app_name: Value of the ``app`` field in JSON records
        max_bytes: Size at which the log file is rotated
        backup_count: Rotated files kept
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(_formatter(json_format, app_name, colored=True))
        root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(_formatter(json_format, app_name, colored=False))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging initialized: level={level}, file={log_file or 'none'}, "
        f"console={console_output}, json={json_format}"
    )


def get_logger(name: str) -> logging.Logger:
    """Return the stdlib logger called ``name``."""
    return logging.getLogger(name)


def shutdown_logging() -> None:
    """
    Close and detach every root handler.

    Releases the rotating file handle; call at process exit.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            pass
    logging.shutdown()


def configure_from_env() -> None:
    """
    Configure logging from environment variables.

    Environment variables:
        LOG_LEVEL: Log level (default: INFO)
        LOG_FILE: Log file path (default: none)
        LOG_JSON: Use JSON format (default: false)
        LOG_CONSOLE: Enable console output (default: true)
    """
    setup_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        console_output=os.getenv("LOG_CONSOLE", "true").lower() in _TRUTHY,
        json_format=os.getenv("LOG_JSON", "false").lower() in _TRUTHY,
    )
