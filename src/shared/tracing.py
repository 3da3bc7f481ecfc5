from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from .logging import service_resource, setup_logging
from .metrics import setup_metrics


def setup_tracing() -> TracerProvider:
    """Install a tracer provider exporting spans to the console.

    Every CA, key and store operation opens a span through the global tracer.
    """
    provider = TracerProvider(resource=service_resource())
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    return provider


def setup_telemetry() -> None:
    """Configure logging, tracing and metrics for a process embedding the PKI."""
    setup_logging()
    setup_tracing()
    setup_metrics()
