"""
OpenTelemetry tracing setup.
"""

import logging

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from jobqueue.config import Settings

logger = logging.getLogger(__name__)


def setup_tracing(
    settings: Settings,
    enable_console_export: bool = False,
) -> TracerProvider:
    """
    Set up an OpenTelemetry tracer provider for one context.

    The provider is not installed globally; the context hands out its tracer.
    Spans are exported over OTLP only when an endpoint is configured.

    Args:
        settings: Application settings.
        enable_console_export: If True, also export spans to console.

    Returns:
        TracerProvider: The provider (shut down with the context).
    """
    from jobqueue import __version__

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )
    provider = TracerProvider(resource=resource)

    if settings.otel_exporter_otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTLP span export enabled",
            extra={"endpoint": settings.otel_exporter_otlp_endpoint},
        )

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    return provider


def get_tracer(provider: TracerProvider, settings: Settings) -> Tracer:
    """
    Get the tracer for a provider.

    Returns:
        Tracer: The tracer instance.
    """
    return provider.get_tracer(settings.otel_service_name)
