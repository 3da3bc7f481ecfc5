from opentelemetry import metrics
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader

from .logging import service_resource


def setup_metrics(console_interval_ms: int = 60_000) -> MeterProvider:
    """Install the meter provider backing `pki.metrics`.

    The `pki_*` instruments are created against the global proxy meter at
    import time, so they start recording once this provider is set.
    """
    # Prometheus (pull): the embedding process serves the default registry
    prometheus_reader = PrometheusMetricReader()

    # Console, for local visibility
    console_reader = PeriodicExportingMetricReader(
        ConsoleMetricExporter(), export_interval_millis=console_interval_ms
    )

    provider = MeterProvider(
        resource=service_resource(), metric_readers=[prometheus_reader, console_reader]
    )
    metrics.set_meter_provider(provider)
    return provider
