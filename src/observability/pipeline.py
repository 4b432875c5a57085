"""The telemetry pipeline: global gate, sink chain, span tracker and exporter.

One `TelemetryPipeline` is built at process start and passed by reference to
whatever needs to emit events or open spans. Emission is fire-and-forget:

    event -> global gate -> each sink's own threshold -> sink

An event reaches sink `s` iff `severity >= global_level and severity >= s.threshold`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from .exporter import BatchSpanExporter, SpanTransport
from .models import Event, Severity, Span
from .sampling import Sampler, TraceIdRatioSampler
from .sinks import ConsoleEventSink, DuckDBEventSink, EventSink, SinkChain, SinkResult, SpanEventSink
from .tracing import SpanTracker

if TYPE_CHECKING:
    from config import TelemetryConfig

_T = TypeVar("_T")

logger = logging.getLogger(__name__)


class TelemetryPipeline:
    """Process-wide logging/tracing state, constructed once and injected."""

    def __init__(
        self,
        *,
        global_level: Severity | str = Severity.INFO,
        exporter: BatchSpanExporter | None = None,
        sampler: Sampler | None = None,
        id_seed: int | None = None,
    ) -> None:
        self.global_level = Severity.parse(global_level)
        self.sinks = SinkChain()
        self.exporter = exporter
        self.tracker = SpanTracker(
            sampler=sampler,
            on_end=self._export_span if exporter is not None else None,
            on_error=self._record_error,
            id_seed=id_seed,
        )
        self._closed = False

    @classmethod
    def from_config(cls, cfg: TelemetryConfig, *, transport: SpanTransport | None = None) -> TelemetryPipeline:
        """Build the standard dual-sink pipeline (stdout + collector, optional DuckDB)."""
        if transport is None:
            from .otlp import OtlpSpanTransport

            transport = OtlpSpanTransport(
                endpoint=cfg.otlp_endpoint,
                service_name=cfg.service_name,
                service_version=cfg.service_version,
                insecure=cfg.otlp_insecure,
                timeout_s=cfg.export_timeout_s,
            )

        exporter = BatchSpanExporter(
            transport,
            max_queue_size=cfg.export_max_queue_size,
            max_export_batch_size=cfg.export_max_batch_size,
            schedule_delay_s=cfg.export_schedule_delay_s,
            max_export_attempts=cfg.export_max_attempts,
        )
        pipeline = cls(
            global_level=cfg.global_level,
            exporter=exporter,
            sampler=TraceIdRatioSampler(cfg.sampling_ratio, seed=cfg.sampling_seed),
        )
        pipeline.add_sink(ConsoleEventSink(), cfg.stdout_level, name="stdout")
        pipeline.add_sink(SpanEventSink(), cfg.remote_level, name="remote")
        if cfg.event_db_path:
            pipeline.add_sink(DuckDBEventSink(path=cfg.event_db_path), cfg.event_db_level, name="duckdb")
        return pipeline

    def add_sink(self, sink: EventSink, threshold: Severity | str, *, name: str | None = None) -> None:
        self.sinks.register(sink, threshold, name=name)

    def enabled(self, severity: Severity) -> bool:
        """True if an event at `severity` would pass the global gate and at least one sink."""
        floor = self.sinks.min_threshold
        return floor is not None and severity >= self.global_level and severity >= floor

    # -- events -----------------------------------------------------------

    def emit(self, severity: Severity, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit an event attached to the current span. Never raises."""
        try:
            if severity < self.global_level:
                return []
            event = Event(
                severity=severity,
                message=message,
                fields=fields,
                span=self.tracker.current_span(),
            )
            return self.sinks.dispatch(event)
        except Exception as exc:  # noqa: BLE001 - emission must not fail the caller
            logger.warning("failed to emit event %r: %r", message, exc)
            return []

    def trace(self, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit at TRACE."""
        return self.emit(Severity.TRACE, message, **fields)

    def debug(self, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit at DEBUG."""
        return self.emit(Severity.DEBUG, message, **fields)

    def info(self, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit at INFO."""
        return self.emit(Severity.INFO, message, **fields)

    def warn(self, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit at WARN."""
        return self.emit(Severity.WARN, message, **fields)

    def error(self, message: str, /, **fields: Any) -> list[SinkResult]:
        """Emit at ERROR."""
        return self.emit(Severity.ERROR, message, **fields)

    # -- spans ------------------------------------------------------------

    def current_span(self) -> Span | None:
        """Return the span current in the calling task, if any."""
        return self.tracker.current_span()

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        """Scope a block in a span (see `SpanTracker.span`)."""
        with self.tracker.span(name, attributes=attributes) as span:
            yield span

    def in_scope(self, name: str, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        """Run `fn` to completion inside a span."""
        return self.tracker.in_scope(name, fn, *args, **kwargs)

    async def instrument(self, name: str, awaitable: Awaitable[_T], **attributes: Any) -> _T:
        """Await `awaitable` inside a span that stays current across suspensions."""
        return await self.tracker.instrument(name, awaitable, attributes=attributes)

    def _export_span(self, span: Span) -> None:
        try:
            self.exporter.export(span)
        except Exception as exc:  # noqa: BLE001 - a closing span must not raise
            logger.warning("failed to queue span %r for export: %r", span.name, exc)

    def _record_error(self, span: Span, exc: BaseException) -> None:
        """Emit the single ERROR event for a failure, from the innermost span it escaped."""
        self.emit(Severity.ERROR, f"{span.name} failed: {type(exc).__name__}: {exc}", error=repr(exc))

    # -- lifecycle --------------------------------------------------------

    def force_flush(self, timeout_s: float | None = 30.0) -> bool:
        if self.exporter is None:
            return True
        return self.exporter.force_flush(timeout_s)

    def shutdown(self, timeout_s: float | None = 30.0) -> None:
        """Flush buffered spans and close sinks. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        if self.exporter is not None:
            self.exporter.shutdown(timeout_s)
        self.sinks.close()

    def degraded_status(self) -> dict[str, Any]:
        status: dict[str, Any] = dict(self.sinks.degraded_status())
        if self.exporter is not None:
            status.update(self.exporter.degraded_status())
        return status
