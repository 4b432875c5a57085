"""OTLP transport: ships closed spans to an OpenTelemetry collector over gRPC.

Spans are converted into the OpenTelemetry SDK's `ReadableSpan` so the stock
`OTLPSpanExporter` handles the wire encoding; events attached to a span become
OTLP span events carrying `level` plus their structured fields.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import Event as OtelEvent
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.trace import SpanContext, SpanKind, Status, StatusCode, TraceFlags

from .models import Event, Span, SpanStatus

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    SpanStatus.UNSET: StatusCode.UNSET,
    SpanStatus.OK: StatusCode.OK,
    SpanStatus.ERROR: StatusCode.ERROR,
}


def create_resource(service_name: str, service_version: str) -> Resource:
    """Resource attributes attached to every exported span."""
    return Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})


def _attribute_value(value: Any) -> Any:
    # OTLP attributes accept primitives and homogeneous sequences of primitives.
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(v, (bool, int, float, str)) for v in value):
        return list(value)
    return repr(value)


def _attributes(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _attribute_value(value) for key, value in values.items() if value is not None}


def _span_context(span: Span) -> SpanContext:
    return SpanContext(
        trace_id=span.trace_id,
        span_id=span.span_id,
        is_remote=False,
        trace_flags=TraceFlags(TraceFlags.SAMPLED if span.sampled else TraceFlags.DEFAULT),
    )


def _to_otel_event(event: Event) -> OtelEvent:
    attributes = _attributes(event.fields)
    attributes["level"] = event.severity.name
    return OtelEvent(
        name=event.message,
        attributes=attributes,
        timestamp=int(event.timestamp.timestamp() * 1_000_000_000),
    )


def to_readable_span(span: Span, *, resource: Resource, scope: InstrumentationScope) -> ReadableSpan:
    """Convert a closed span into the SDK representation the OTLP exporter encodes."""
    status = Status(_STATUS_CODES[span.status], span.status_description if span.status is SpanStatus.ERROR else None)
    return ReadableSpan(
        name=span.name,
        context=_span_context(span),
        parent=_span_context(span.parent) if span.parent is not None else None,
        resource=resource,
        attributes=_attributes(span.attributes),
        events=[_to_otel_event(e) for e in span.events],
        kind=SpanKind.INTERNAL,
        status=status,
        start_time=span.start_time_ns,
        end_time=span.end_time_ns,
        instrumentation_scope=scope,
    )


class OtlpSpanTransport:
    """`SpanTransport` backed by the OpenTelemetry OTLP/gRPC span exporter."""

    def __init__(
        self,
        *,
        endpoint: str = "http://localhost:4317",
        service_name: str,
        service_version: str,
        insecure: bool = True,
        timeout_s: float = 10.0,
        exporter: SpanExporter | None = None,
    ) -> None:
        self._resource = create_resource(service_name, service_version)
        self._scope = InstrumentationScope(service_name, service_version)
        self._exporter = exporter or OTLPSpanExporter(endpoint=endpoint, insecure=insecure, timeout=timeout_s)
        self.endpoint = endpoint

    def export(self, spans: Sequence[Span]) -> bool:
        readable = [to_readable_span(s, resource=self._resource, scope=self._scope) for s in spans]
        result = self._exporter.export(readable)
        if result is not SpanExportResult.SUCCESS:
            logger.debug("collector at %s rejected a batch of %d spans", self.endpoint, len(spans))
            return False
        return True

    def shutdown(self) -> None:
        self._exporter.shutdown()
