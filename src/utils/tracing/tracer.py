"""
Tracer provider setup.

An OTLP exporter is attached only when an endpoint is configured (argument or
``OTLP_ENDPOINT``); ``TRACE_CONSOLE=true`` adds a console exporter for local
debugging.
"""

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "table_mirror"

_provider: TracerProvider | None = None


def initialize_tracing(
    service_name: str = "table-mirror",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
    sampling_rate: float = 1.0,
) -> trace.Tracer:
    """
    Install an SDK tracer provider with the configured exporters.

    Args:
        service_name: ``service.name`` resource attribute
        otlp_endpoint: OTLP gRPC collector (e.g. "localhost:4317"); falls back
            to ``OTLP_ENDPOINT``, and no OTLP exporter is created when neither is set
        console_export: Also print finished spans to stdout
        sampling_rate: Ratio of traces kept, 0.0-1.0

    Returns:
        Tracer bound to the new provider
    """
    global _provider

    if _provider is not None:
        logger.warning("Tracing already initialized, returning existing tracer")
        return _provider.get_tracer(INSTRUMENTATION_NAME)

    provider = TracerProvider(
        resource=Resource(attributes={SERVICE_NAME: service_name}),
        sampler=TraceIdRatioBased(sampling_rate),
    )

    exporters = []
    endpoint = otlp_endpoint or os.getenv("OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
        exporters.append(f"otlp({endpoint})")

    if console_export or os.getenv("TRACE_CONSOLE", "").lower() == "true":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        exporters.append("console")

    if not exporters:
        logger.info("No trace exporters configured, spans are recorded but not exported")

    trace.set_tracer_provider(provider)
    _provider = provider

    logger.info(
        f"Tracing initialized: {service_name} "
        f"(exporters: {', '.join(exporters) or 'none'}, sampling: {sampling_rate})"
    )
    return provider.get_tracer(INSTRUMENTATION_NAME)


def get_tracer() -> trace.Tracer:
    """
    Tracer from the global provider.

    Does not initialize anything: before ``initialize_tracing`` this is the
    OpenTelemetry API's no-op tracer.
    """
    return trace.get_tracer(INSTRUMENTATION_NAME)


def shutdown_tracing() -> None:
    """Flush pending spans and shut the provider down."""
    global _provider

    if _provider is None:
        return
    try:
        _provider.shutdown()
        logger.info("Tracing shutdown complete")
    except Exception as e:
        logger.error(f"Error during tracing shutdown: {e}")
    finally:
        _provider = None
