"""OpenTelemetry wiring for the payments API."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from vetpay.common.config import settings

# Health probes and Prometheus scrapes are not traced.
EXCLUDED_URLS = "health,metrics"


def setup_tracing(service_name: str) -> None:
    """Install an OTLP/HTTP exporting tracer provider when `OTEL_ENABLED` is set."""

    if not settings.otel_enabled:
        return
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "vetpay",
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)
