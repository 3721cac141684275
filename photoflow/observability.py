"""Tracing and Prometheus exposure for the API process and the ticker worker."""

import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_fastapi_instrumentator import Instrumentator

from photoflow.config import settings
from photoflow.middleware import STREAMING_PATHS

logger = logging.getLogger(__name__)

METRICS_PATH = "/metrics"

# Process-wide: instrumentors patch libraries globally, so only once per process.
_instrumented: set[str] = set()


def _configure_tracer(service_name: str) -> None:
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    endpoint = f"{settings.otel_exporter_otlp_endpoint.rstrip('/')}/v1/traces"
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    logger.info("Exporting traces for %s to %s", service_name, endpoint)


def _expose_metrics(app: FastAPI) -> None:
    if any(getattr(route, "path", None) == METRICS_PATH for route in app.routes):
        return
    Instrumentator(excluded_handlers=[METRICS_PATH, *sorted(STREAMING_PATHS)]).instrument(
        app
    ).expose(app, endpoint=METRICS_PATH, include_in_schema=False)
    logger.info("Prometheus metrics exposed at %s", METRICS_PATH)


def setup_api_observability(app: FastAPI, engine=None) -> None:
    """Trace requests and database calls; expose ``/metrics`` when enabled."""
    if settings.observability_enabled and "api" not in _instrumented:
        _configure_tracer(settings.otel_service_name_api)
        FastAPIInstrumentor.instrument_app(app, excluded_urls=",".join(STREAMING_PATHS))
        if engine is not None:
            SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
        _instrumented.add("api")

    if settings.metrics_enabled:
        _expose_metrics(app)


def setup_celery_observability() -> None:
    """Trace background tick tasks when enabled."""
    if not settings.observability_enabled or "worker" in _instrumented:
        return
    _configure_tracer(settings.otel_service_name_worker)
    CeleryInstrumentor().instrument()
    _instrumented.add("worker")
