from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from funnelcrm.core.config import Settings, get_settings


_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str) -> TracerProvider:
    """Return the process-wide provider, installing it on first use.

    OpenTelemetry only accepts one global provider, so later calls reuse the
    first one whatever ``service_name`` they pass.
    """
    global _provider

    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _provider_for(settings.otel_service_name)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "funnelcrm-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def current_trace_id() -> str | None:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")


def get_fastapi_server_request_hook():
    # Attributes copied from request headers onto the server span.
    header_attributes = {
        b"x-correlation-id": "correlation_id",
        b"x-company-id": "crm.company_id",
    }

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            attribute = header_attributes.get(name.lower())
            if attribute is not None and value:
                span.set_attribute(attribute, value.decode("utf-8", errors="replace"))

    return server_request_hook
