"""OpenTelemetry wiring for the order service.

Spans from `tracer` are no-ops until `setup_tracing` registers a provider, so
services can open spans unconditionally and tests need no collector.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from orderflow.common.config import CommonSettings

# Probe and scrape endpoints stay out of traces.
UNTRACED_PATHS = "health,metrics"


def setup_tracing(app_settings: CommonSettings) -> TracerProvider:
    """Register a provider exporting to the configured OTLP HTTP endpoint."""

    provider = TracerProvider(resource=Resource.create({"service.name": app_settings.service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=app_settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_PATHS)


tracer = trace.get_tracer("orderflow")
