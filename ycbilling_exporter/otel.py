from __future__ import annotations

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .settings import Settings


def instrument(app, settings: Settings) -> None:
    endpoint = settings.otel_exporter_otlp_endpoint
    resource = Resource.create({"service.name": settings.otel_service_name})

    if endpoint:
        tracer_provider = TracerProvider(resource=resource)
        span_exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(tracer_provider)

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,healthz")
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument()
