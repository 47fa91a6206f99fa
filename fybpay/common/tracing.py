"""OpenTelemetry wiring: OTLP export for the API and spans around reconciliation."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from fybpay.common.config import CommonSettings


def configure_tracing(config: CommonSettings, app: FastAPI | None = None) -> bool:
    """Install the OTLP exporter when enabled; returns whether tracing is on.

    When disabled the global no-op provider stays in place, so `tracer` spans
    cost nothing.
    """

    if not config.otel_enabled:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": config.service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    return True


tracer = trace.get_tracer("fybpay")
