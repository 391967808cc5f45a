from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from functools import lru_cache
import logging
import os
from typing import Any, Iterator, Mapping

SERVICE_NAME = "pharmacy-formulary-assistant"
ATTRIBUTE_PREFIX = "formulary."
LOGGER = logging.getLogger("pipeline.tracing")

# Request and intent fields exported on assistant spans, keyed by span attribute name.
REQUEST_ATTRIBUTES: dict[str, str] = {
    "request_id": "request.id",
    "pharmacy_id": "pharmacy.id",
    "active_topic_hint": "topic.hint",
    "max_results": "retrieval.max_results",
    "history_turns": "history.turns",
    "intent": "intent.type",
    "subject": "intent.subject",
    "needs": "intent.needs",
    "sources": "intent.sources",
    "variant_count": "retrieval.variants",
    "chunk_count": "retrieval.chunks",
    "stage": "pipeline.stage",
}


def tracing_enabled() -> bool:
    return bool(os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "").strip())


def span_attributes(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Map pipeline fields onto namespaced OpenTelemetry attribute values.

    Unknown fields and ``None`` values are dropped; enums export their value,
    collections become sorted string lists.
    """
    attributes: dict[str, Any] = {}
    for field_name, value in fields.items():
        key = REQUEST_ATTRIBUTES.get(field_name)
        if key is None or value is None:
            continue
        attributes[ATTRIBUTE_PREFIX + key] = _attribute_value(value)
    return attributes


def _attribute_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(str(getattr(item, "value", item)) for item in value)
    if isinstance(value, (list, tuple)):
        return [str(getattr(item, "value", item)) for item in value]
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


@contextmanager
def start_span(name: str, *, attributes: Mapping[str, Any] | None = None) -> Iterator[Any]:
    """Open an OpenTelemetry span when an exporter is configured, else a no-op."""
    tracer = _get_tracer()
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(name) as span:
        for key, value in span_attributes(attributes or {}).items():
            span.set_attribute(key, value)
        yield span


def annotate_span(span: Any, **fields: Any) -> None:
    if span is None:
        return
    for key, value in span_attributes(fields).items():
        span.set_attribute(key, value)


@lru_cache(maxsize=1)
def _get_tracer():
    if not tracing_enabled():
        return None
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        LOGGER.info("OTEL_EXPORTER_OTLP_ENDPOINT is set but opentelemetry is not installed; tracing disabled.")
        return None

    provider = trace.get_tracer_provider()
    if provider.__class__.__name__ != "TracerProvider":
        provider = TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "").strip()))
        )
        trace.set_tracer_provider(provider)
    return trace.get_tracer(SERVICE_NAME)
