"""
Distributed Tracing with OpenTelemetry.

Spans cover HTTP requests, SQL statements and the ledger operations
themselves (spend, acquire, reconcile, migrate, expire).
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from pointledger.config import settings

_tracer = trace.get_tracer("pointledger")


def setup_tracing() -> None:
    """Install a TracerProvider exporting over OTLP, when tracing is enabled."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "deployment.environment": settings.environment,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(*engines: Any) -> None:
    """Trace queries on each async engine (write and read replica)."""
    if not settings.tracing_enabled:
        return
    instrumentor = SQLAlchemyInstrumentor()
    for engine in engines:
        instrumentor.instrument(engine=engine.sync_engine)


@contextmanager
def ledger_span(operation: str, **attributes: Any) -> Iterator[Span]:
    """
    Span around one ledger operation.

    None-valued attributes are skipped. A points error escaping the block
    marks the span as failed and is re-raised unchanged.

    Usage:
        with ledger_span("points.spend", user_id=42, cost=5) as span:
            ...
            span.set_attribute("points.free_used", 3)
    """
    with _tracer.start_as_current_span(operation, record_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"points.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            span.record_exception(exc)
            raise
