import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

logger = logging.getLogger(__name__)

_provider: Optional[TracerProvider] = None


def setup_tracing(service_name: str = "feedsync", endpoint: Optional[str] = None) -> TracerProvider:
    """
    Initializes OpenTelemetry tracing with an OTLP HTTP exporter.

    Safe to call more than once; the first provider wins. Until this runs,
    get_tracer() hands out the API's no-op tracer.
    """
    global _provider
    if _provider is not None:
        return _provider

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _provider = provider
    logger.info(f"OpenTelemetry tracing initialized for service '{service_name}'")
    return provider


def shutdown_tracing() -> None:
    """Flush and stop the exporter installed by setup_tracing()."""
    global _provider
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None


def get_tracer(name: str) -> trace.Tracer:
    """
    Returns a tracer with the specified name.
    """
    return trace.get_tracer(name)
