from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except ImportError:  # pragma: no cover - exporter is an optional extra
    OTLPSpanExporter = None  # type: ignore[assignment]


# Request headers copied onto the FastAPI server span.
_HEADER_ATTRIBUTES: dict[bytes, str] = {
    b"x-correlation-id": "correlation_id",
    b"x-workspace-id": "workspace_id",
}

_provider: TracerProvider | None = None
_exporters_installed = False


def _provider_for(service_name: str) -> TracerProvider:
    """Return the process-wide provider, registering it globally on first use."""
    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.namespace": "onboardhub",
                    "service.version": os.getenv("APP_VERSION", "0.1.0"),
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def _configured_processors() -> Iterator[SpanProcessor]:
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and OTLPSpanExporter is not None:
        yield BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        yield SimpleSpanProcessor(ConsoleSpanExporter())


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_installed

    if not enable:
        return None
    provider = _provider_for(service_name)
    if not _exporters_installed:
        for processor in _configured_processors():
            provider.add_span_processor(processor)
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            attribute = _HEADER_ATTRIBUTES.get(name.lower())
            if attribute and value:
                span.set_attribute(attribute, value.decode("utf-8"))

    return server_request_hook
