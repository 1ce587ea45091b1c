"""OpenTelemetry tracing configuration for distributed tracing."""
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.ext.asyncio import AsyncEngine

from enrollment_webhooks.config import Settings


def setup_tracing(app: FastAPI, settings: Settings, engine: AsyncEngine | None = None) -> None:
    """
    Configure OpenTelemetry tracing with FastAPI and SQLAlchemy instrumentation.

    Args:
        app: FastAPI application instance
        settings: Settings carrying the service name and OTLP endpoint
        engine: Engine to instrument; all engines when omitted
    """
    resource = Resource(attributes={SERVICE_NAME: settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)

    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    else:
        SQLAlchemyInstrumentor().instrument()
