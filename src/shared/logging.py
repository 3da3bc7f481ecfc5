import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter
from opentelemetry.sdk.resources import Resource

from .config import settings

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def service_resource() -> Resource:
    """OTel resource shared by logs, traces and metrics."""
    return Resource.create(
        {"service.name": settings.APP_NAME, "deployment.environment": settings.APP_ENV}
    )


def setup_logging(level: str | None = None) -> LoggerProvider:
    """Route stdlib logging to OpenTelemetry (console exporter) and stdout.

    Safe to call more than once: handlers installed by a previous call are
    replaced, not duplicated.
    """
    level = (level or settings.LOG_LEVEL).upper()

    logger_provider = LoggerProvider(resource=service_resource())
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(ConsoleLogRecordExporter()))
    set_logger_provider(logger_provider)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_pki_platform", False):
            root.removeHandler(handler)

    # OTel handler: structured records with the `extra={...}` attributes
    otel_handler = LoggingHandler(level=getattr(logging, level), logger_provider=logger_provider)

    # Stream handler: immediate output, OTel batching delays records
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter(_FORMAT))

    for handler in (otel_handler, stream_handler):
        handler._pki_platform = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)

    # Artifact writes log at DEBUG; keep them out unless asked for
    if level != "DEBUG":
        logging.getLogger("pki.repository").setLevel(logging.INFO)

    return logger_provider


logger = logging.getLogger("pki_platform")
