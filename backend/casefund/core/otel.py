"""OpenTelemetry initialization, instrumentation and ledger spans"""
import logging
from contextlib import contextmanager

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

from casefund.core.config import settings

logger = logging.getLogger(__name__)

# No-op until initialize_otel() installs a real provider
tracer = trace.get_tracer("casefund.ledger")


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "service.namespace": "casefund",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
        "ledger.currency": settings.CURRENCY,
    })


def _configure_tracing(resource: Resource):
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(
        OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
    ))
    trace.set_tracer_provider(provider)


def _configure_metrics(resource: Resource):
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
        export_interval_millis=5000,
        export_timeout_millis=30000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))


def initialize_otel():
    """Install trace and metric providers when an OTLP endpoint is configured"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()
        _configure_tracing(resource)
        _configure_metrics(resource)
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def setup_otel_logging():
    """Ship payout, settlement and webhook logs with their trace context"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=_resource())
        set_logger_provider(logger_provider)
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(
            OTLPLogExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
            max_queue_size=2048,
            export_timeout_millis=30000,
            schedule_delay_millis=5000
        ))

        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
        return True
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False


@contextmanager
def ledger_span(name: str, **attributes):
    """Span around one money-moving operation.

    Attribute values of None are dropped; everything else is stringified so
    Decimals and ids can be passed as they are.
    """
    with tracer.start_as_current_span(f"ledger.{name}") as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"ledger.{key}", str(value))
        yield span


def instrument_fastapi(app):
    """Instrument FastAPI application with OpenTelemetry"""
    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,health")


def instrument_sqlalchemy(engine):
    """Instrument SQLAlchemy with OpenTelemetry"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
