"""
OpenTelemetry tracing for table-mirror.

Spans wrap a reconciliation run, each page fetch, each chunk write and the
orphan cleanup. Without ``initialize_tracing`` (or without an exporter) the
global no-op provider is used, so instrumented code runs unchanged in tests.
"""

from .context import add_span_attributes, add_span_event, trace_operation
from .decorators import trace_function
from .tracer import get_tracer, initialize_tracing, shutdown_tracing

__all__ = [
    "initialize_tracing",
    "get_tracer",
    "shutdown_tracing",
    "trace_operation",
    "trace_function",
    "add_span_attributes",
    "add_span_event",
]
