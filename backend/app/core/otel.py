"""OpenTelemetry export and instrumentation.

Nothing here runs unless OTEL_EXPORTER_OTLP_ENDPOINT is set. Without it the
OpenTelemetry API hands out no-op tracers, so ``get_tracer`` is always safe.
"""
import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import settings

logger = logging.getLogger(__name__)

# Paths left out of request traces
EXCLUDED_URLS = "health,metrics"


def is_enabled() -> bool:
    return bool(settings.OTEL_EXPORTER_OTLP_ENDPOINT)


def build_resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def _exporter_options():
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    return {"endpoint": endpoint, "insecure": not endpoint.startswith("https://")}


def initialize_otel() -> bool:
    """Install trace and metric providers exporting over OTLP/gRPC"""
    if not is_enabled():
        return False

    try:
        resource = build_resource()
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(**_exporter_options()),
            export_interval_millis=10000,
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"OpenTelemetry export disabled, provider setup failed: {e}")
        return False
    return True


def setup_otel_logging() -> bool:
    """Ship the audit loggers (and everything else at root) over OTLP"""
    if not is_enabled():
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        provider = LoggerProvider(resource=build_resource())
        provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_options())))
        set_logger_provider(provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=provider))
    except Exception as e:
        logger.warning(f"OTLP log export disabled: {e}")
        return False
    return True


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine):
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"SQLAlchemy instrumentation disabled: {e}")


def get_tracer(name: str):
    return trace.get_tracer(name)
