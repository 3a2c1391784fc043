"""OpenTelemetry tracing setup for relay spans."""

from __future__ import annotations

import os

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .config import TracingSettings

logger = structlog.get_logger(__name__)


def setup_tracing(settings: TracingSettings) -> TracerProvider | None:
    """Install an OTLP tracer provider when tracing is enabled.

    Returns:
        The installed provider, or None when tracing stays a no-op.
    """
    if not settings.enabled:
        logger.info("tracing_disabled")
        return None

    exporter_name = os.getenv("OTEL_TRACES_EXPORTER", "otlp").lower()
    if exporter_name in {"none", ""}:
        logger.info("tracing_exporter_disabled")
        return None

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.service_name})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info("tracing_configured", service_name=settings.service_name)
    return provider


def shutdown_tracing(provider: TracerProvider | None) -> None:
    """Flush pending spans on service teardown."""
    if provider is None:
        return
    provider.shutdown()
    logger.info("tracing_shutdown")
