"""
Decorator form of ``trace_operation``.
"""

import functools

from .context import trace_operation


def trace_function(operation_name: str | None = None, **default_attributes):
    """
    Wrap every call of the decorated function in a span.

    Example:
        >>> @trace_function("mirror.load_mappings")
        ... def load_table_mappings(path):
        ...     ...
    """
    def decorator(func):
        name = operation_name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with trace_operation(name, function=func.__name__, **default_attributes):
                return func(*args, **kwargs)

        return wrapper
    return decorator
