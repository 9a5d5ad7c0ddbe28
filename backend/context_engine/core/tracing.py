"""
OpenTelemetry tracing configuration
"""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from context_engine import __version__
from context_engine.core.config import Settings
from context_engine.core.logging_config import LoggingConfig

logger = LoggingConfig.get_logger(__name__)

_tracer_provider: Optional[TracerProvider] = None


def configure_tracing(settings: Settings) -> bool:
    """
    Configure OpenTelemetry tracing

    Without this call the API's no-op tracer provider stays in place, so spans
    created by the services cost nothing.

    Args:
        settings: Settings with tracing options

    Returns:
        True if a tracer provider was installed
    """
    global _tracer_provider

    if _tracer_provider is not None:
        return True

    if not settings.enable_tracing:
        logger.info("OpenTelemetry tracing is disabled via configuration")
        return False

    resource = Resource.create({
        "service.name": settings.tracing_service_name,
        "service.version": __version__,
        "service.environment": settings.app_env,
    })
    provider = TracerProvider(resource=resource)

    if settings.tracing_exporter == "otlp" and settings.tracing_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.tracing_otlp_endpoint)
        logger.info(f"Using OTLP exporter: {settings.tracing_otlp_endpoint}")
    else:
        if settings.tracing_exporter == "otlp":
            logger.warning("OTLP exporter selected but no endpoint configured, falling back to console")
        exporter = ConsoleSpanExporter()

    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    logger.info("OpenTelemetry tracing configured successfully")
    return True


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance (usually named after the module)"""
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """
    Get current trace ID from context

    Returns:
        Trace ID as string or None if not in a trace
    """
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.trace_id, "032x")
    return None


def add_span_attributes(span=None, **kwargs):
    """
    Add attributes to current span or provided span

    Args:
        span: Optional span object (if None, uses current span)
        **kwargs: Attributes to add; None values are skipped
    """
    if span is None:
        span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in kwargs.items():
        if value is not None:
            span.set_attribute(key, value)


def shutdown_tracing():
    """Flush and shut down the installed tracer provider, if any"""
    global _tracer_provider

    if _tracer_provider is None:
        return

    logger.info("Shutting down OpenTelemetry tracing...")
    try:
        _tracer_provider.force_flush(timeout_millis=5000)
        _tracer_provider.shutdown()
    finally:
        _tracer_provider = None
