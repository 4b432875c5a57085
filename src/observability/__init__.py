"""Dual-sink logging and tracing pipeline.

This package provides:
- Structured events filtered first by a process-wide gate, then by each sink.
- Spans whose "current" scope is task-local, so it survives await points.
- A batching exporter that ships sampled traces to a collector off the request path.
"""

from .bridge import PipelineLogHandler, capture_logging
from .exporter import BatchSpanExporter, InMemorySpanTransport, SpanTransport
from .models import Event, Severity, Span, SpanStatus
from .pipeline import TelemetryPipeline
from .sampling import Sampler, TraceIdRatioSampler
from .sinks import (
    ConsoleEventSink,
    DuckDBEventSink,
    EventSink,
    InMemoryEventSink,
    SinkChain,
    SinkResult,
    SpanEventSink,
)
from .tracing import SpanTracker

__all__ = [
    "BatchSpanExporter",
    "ConsoleEventSink",
    "DuckDBEventSink",
    "Event",
    "EventSink",
    "InMemoryEventSink",
    "InMemorySpanTransport",
    "PipelineLogHandler",
    "Sampler",
    "Severity",
    "SinkChain",
    "SinkResult",
    "Span",
    "SpanEventSink",
    "SpanStatus",
    "SpanTracker",
    "SpanTransport",
    "TelemetryPipeline",
    "TraceIdRatioSampler",
    "capture_logging",
]
