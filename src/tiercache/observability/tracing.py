"""OpenTelemetry tracing for tiercache.

Spans are opened around upstream loader executions so that a cache miss shows
up in the caller's trace together with the work it triggered. Redis commands
issued by the distributed tier are traced by the Redis instrumentation.

Usage:
    from tiercache.observability.tracing import get_tracer

    tracer = get_tracer(__name__)

    with tracer.start_as_current_span("cache.load") as span:
        span.set_attribute("cache.key", key)
        ...

Processes that call setup_tracing() must call shutdown_tracing() before exit;
the OTLP exporter batches spans in the background.
"""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from tiercache.config import settings

logger = logging.getLogger(__name__)

_provider: TracerProvider | None = None
_configured = False


def _span_processor() -> SpanProcessor | None:
    """OTLP export when an endpoint is set, console output in dev, else nothing."""
    if settings.otlp_endpoint:
        logger.info(f"Exporting spans to {settings.otlp_endpoint}")
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
    if settings.env == "dev":
        logger.info("Printing spans to the console (dev mode)")
        return SimpleSpanProcessor(ConsoleSpanExporter())
    return None


def setup_tracing() -> None:
    """Install the tiercache tracer provider. Safe to call more than once."""
    global _provider, _configured

    if _configured:
        return
    _configured = True

    if not settings.enable_tracing:
        logger.info("Tracing is disabled")
        return

    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.app_name,
                "service.instance.id": settings.instance_id,
                "deployment.environment": settings.env,
            }
        )
    )
    processor = _span_processor()
    if processor is not None:
        _provider.add_span_processor(processor)
    trace.set_tracer_provider(_provider)

    RedisInstrumentor().instrument()

    logger.info("OpenTelemetry tracing initialized")


def shutdown_tracing() -> None:
    """Flush buffered spans and release the exporter."""
    global _provider, _configured

    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception as e:
            logger.warning(f"Error shutting down tracing: {e}")
        else:
            logger.debug("Tracing shut down")

    _provider = None
    _configured = False


def get_tracer(name: str) -> Any:
    """Return an OpenTelemetry tracer, or a NoOpTracer when tracing is disabled."""
    if not settings.enable_tracing:
        return NoOpTracer()
    return trace.get_tracer(name)


class NoOpTracer:
    """Tracer used when tracing is disabled."""

    def start_as_current_span(self, name: str, **kwargs: Any) -> "NoOpSpanContextManager":
        return NoOpSpanContextManager()

    def start_span(self, name: str, **kwargs: Any) -> "NoOpSpan":
        return NoOpSpan()


class NoOpSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: Any) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass

    def end(self) -> None:
        pass


class NoOpSpanContextManager:
    def __enter__(self) -> NoOpSpan:
        return NoOpSpan()

    def __exit__(self, *args: Any) -> None:
        pass
