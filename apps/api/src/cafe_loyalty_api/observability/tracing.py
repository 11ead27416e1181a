from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.trace import Span, Status, StatusCode

from cafe_loyalty_api.core.settings import settings

_CONFIGURED = False
_tracer = trace.get_tracer("cafe_loyalty_api.ledger")


def _parse_headers(raw: str | None) -> Dict[str, str] | None:
    if not raw:
        return None
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        headers[key.strip()] = value.strip()
    return headers or None


def _build_exporter() -> SpanExporter:
    if settings.otel_exporter_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=_parse_headers(settings.otel_exporter_headers),
        )
    return ConsoleSpanExporter()


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Configure OpenTelemetry tracing + log correlation for the FastAPI app."""

    global _CONFIGURED

    if not _CONFIGURED:
        resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: service_name,
                ResourceAttributes.SERVICE_VERSION: service_version,
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
            }
        )
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(_build_exporter()))
        trace.set_tracer_provider(tracer_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)
        _CONFIGURED = True
    else:
        tracer_provider = trace.get_tracer_provider()

    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


@contextmanager
def ledger_span(name: str, **attributes: object) -> Iterator[Span]:
    """Run a ledger operation inside a span; errors mark the span failed and propagate."""

    with _tracer.start_as_current_span(name, record_exception=True, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"ledger.{key}", str(value))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


__all__ = ["configure_tracing", "ledger_span"]
