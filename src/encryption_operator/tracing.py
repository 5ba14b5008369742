"""OpenTelemetry tracing of controller syncs."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

SERVICE_NAME = "encryption-operator"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"

_tracer: Tracer | None = None


def tracing_enabled() -> bool:
    return os.getenv("OTEL_TRACES_ENABLED", "true").lower() != "false"


def initialize_tracing(component: str | None = None) -> Tracer | None:
    """Install a tracer provider exporting spans over OTLP.

    Environment Variables:
        OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (default: http://localhost:4317)
        OTEL_SERVICE_NAME: Service name (default: encryption-operator)
        OTEL_TRACES_ENABLED: Set to false to leave tracing off

    Args:
        component: Component whose API servers are encrypted, added to every span

    Returns:
        The tracer, or None when tracing stays off
    """
    global _tracer

    if not tracing_enabled():
        return None

    service_name = os.getenv("OTEL_SERVICE_NAME", SERVICE_NAME)
    attributes = {
        "service.name": service_name,
        "service.version": os.getenv("OTEL_SERVICE_VERSION", "unknown"),
    }
    if component:
        attributes["encryption.component"] = component

    try:
        provider = TracerProvider(resource=Resource.create(attributes))
        exporter = OTLPSpanExporter(endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_OTLP_ENDPOINT))
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    except Exception as e:
        # the controllers run without tracing
        logger.warning(f"Failed to initialize tracing: {e}")
        return None

    _tracer = trace.get_tracer(service_name)
    return _tracer


@contextmanager
def sync_span(controller: str, **attributes: Any) -> Iterator[Span | None]:
    """Trace one sync of a controller.

    An exception leaving the block is recorded on the span, which is marked
    as failed, and re-raised.

    Yields:
        The span, or None when tracing is off
    """
    if _tracer is None:
        yield None
        return

    attrs = {"encryption.controller": controller, **attributes}
    with _tracer.start_as_current_span(f"{controller}.sync", attributes=attrs) as span:
        yield span
