"""
Distributed Tracing with OpenTelemetry.

Spans are exported over OTLP. FastAPI requests and SQLAlchemy queries are
instrumented automatically; provider calls get a manual `traced` span.
When TRACING_ENABLED is false no provider is installed and spans are no-ops.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from tokenguard.config import settings

ATTRIBUTE_PREFIX = "tokenguard."

# Health checks and metric scrapes are not traced
UNTRACED_URLS = "/metrics,/api/v1/health"

_tracer_provider: TracerProvider | None = None


def setup_tracing() -> None:
    """Install the OTLP tracer provider (once)."""
    global _tracer_provider
    if not settings.tracing_enabled or _tracer_provider is not None:
        return

    resource = Resource.create(
        {
            SERVICE_NAME: settings.service_name,
            SERVICE_VERSION: settings.api_version,
            f"{ATTRIBUTE_PREFIX}ledger_backend": settings.ledger_backend,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)
    _tracer_provider = provider


def shutdown_tracing() -> None:
    """Flush pending spans."""
    global _tracer_provider
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        _tracer_provider = None


def instrument_fastapi(app: Any) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries of an async engine (instrumented through its sync core)."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _attribute_value(value: Any) -> str | int | float | bool:
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@contextmanager
def traced(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span with `tokenguard.*` attributes.

    Exceptions are not recorded automatically; call `mark_failed` for the
    failures that should show up as span errors.
    """
    tracer = trace.get_tracer("tokenguard")
    with tracer.start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", _attribute_value(value))
        yield span


def mark_failed(span: Span, error: BaseException) -> None:
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)
