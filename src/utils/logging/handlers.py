"""
Logger wrapper that stamps a fixed context onto every record.
"""

import logging


class ContextLogger:
    """
    Logger wrapper carrying key/value context into ``extra``.

    A reconciliation run creates one bound to its mapping label, so every
    line it logs can be attributed to the table it came from.

    Usage:
        log = ContextLogger(__name__, mapping="dbo.customers")
        log.info("Chunk committed", chunk=2, rows=100)
    """

    def __init__(self, name: str, **context):
        """
        Initialize context logger

        Args:
            name: Logger name
            **context: Key/value pairs included in every record
        """
        self.logger = logging.getLogger(name)
        self.context = context

    def _log(self, level: int, msg: str, *args, exc_info=None, **kwargs) -> None:
        """
        Log ``msg`` with the bound context merged into ``extra``

        Args:
            level: Log level
            msg: Log message
            *args: Message format args
            exc_info: Exception info
            **kwargs: Per-call context, overriding bound keys
        """
        if not self.logger.isEnabledFor(level):
            return
        extra = {**self.context, **kwargs}
        self.logger.log(level, msg, *args, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, *args, **kwargs) -> None:
        """Log debug message with context"""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        """Log info message with context"""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        """Log warning message with context"""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, exc_info=None, **kwargs) -> None:
        """Log error message with context"""
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args, exc_info=None, **kwargs) -> None:
        """Log critical message with context"""
        self._log(logging.CRITICAL, msg, *args, exc_info=exc_info, **kwargs)

    def update_context(self, **context) -> None:
        """
        Add or replace bound context for later records

        Args:
            **context: New context key-value pairs
        """
        self.context.update(context)
