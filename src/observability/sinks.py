"""Event sinks and the per-sink filter chain."""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Protocol

import duckdb

from .models import Event, Severity, utc_now

# Last-resort output for failures inside sinks. With no handlers configured,
# stdlib logging writes WARNING and above to stderr.
logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """A synchronous destination for events.

    Sinks only see events that already passed the global gate and their own
    threshold. A sink may raise; the chain contains the failure.
    """

    def write(self, event: Event) -> None:
        """Render, store or forward a single event."""

    def close(self) -> None:
        """Close any underlying resources."""


@dataclass(frozen=True)
class SinkRegistration:
    name: str
    sink: EventSink
    threshold: Severity


@dataclass(frozen=True)
class SinkResult:
    """Outcome of handing one event to one sink."""

    sink: str
    delivered: bool
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        """True unless the sink raised."""
        return self.error is None


class SinkChain:
    """Ordered set of independent sinks, each with its own severity threshold."""

    def __init__(self) -> None:
        self._registrations: tuple[SinkRegistration, ...] = ()
        self._lock = threading.Lock()

        self._failures = 0
        self._first_failure_at: datetime | None = None
        self._last_failure_at: datetime | None = None

    def register(self, sink: EventSink, threshold: Severity | str = Severity.TRACE, *, name: str | None = None) -> None:
        """Add a sink. Registrations are copy-on-write, so dispatch never sees a partial list."""
        registration = SinkRegistration(
            name=name or type(sink).__name__,
            sink=sink,
            threshold=Severity.parse(threshold),
        )
        with self._lock:
            if any(r.name == registration.name for r in self._registrations):
                raise ValueError(f"a sink named {registration.name!r} is already registered")
            self._registrations = (*self._registrations, registration)

    @property
    def registrations(self) -> Sequence[SinkRegistration]:
        """Current registrations, in dispatch order."""
        return self._registrations

    @property
    def min_threshold(self) -> Severity | None:
        """Lowest threshold of any sink, or None when nothing is registered."""
        if not self._registrations:
            return None
        return min(r.threshold for r in self._registrations)

    def dispatch(self, event: Event) -> list[SinkResult]:
        """Offer an event to every sink; one sink failing never affects the others."""
        results: list[SinkResult] = []
        for registration in self._registrations:
            if event.severity < registration.threshold:
                results.append(SinkResult(sink=registration.name, delivered=False))
                continue
            try:
                registration.sink.write(event)
            except Exception as exc:  # noqa: BLE001 - isolate sink failures
                self._record_failure()
                logger.warning("sink %r failed to write event: %r", registration.name, exc, exc_info=exc)
                results.append(SinkResult(sink=registration.name, delivered=False, error=exc))
            else:
                results.append(SinkResult(sink=registration.name, delivered=True))
        return results

    def close(self) -> None:
        """Close every sink; a failing sink does not stop the rest."""
        for registration in self._registrations:
            try:
                registration.sink.close()
            except Exception as exc:  # noqa: BLE001 - close the remaining sinks
                logger.warning("sink %r failed to close: %r", registration.name, exc)

    def _record_failure(self) -> None:
        now = utc_now()
        with self._lock:
            self._failures += 1
            self._first_failure_at = self._first_failure_at or now
            self._last_failure_at = now

    def degraded_status(self) -> dict[str, object]:
        """Return a minimal snapshot of sink health."""
        return {
            "sink_failures": self._failures,
            "first_failure_at": self._first_failure_at,
            "last_failure_at": self._last_failure_at,
        }


class InMemoryEventSink:
    """In-memory sink for tests and local debugging."""

    def __init__(self) -> None:
        """Create an empty in-memory sink."""
        self._lock = threading.Lock()
        self._events: list[Event] = []

    def write(self, event: Event) -> None:
        """Append an event to the in-memory list."""
        with self._lock:
            self._events.append(event)

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""

    def snapshot(self) -> Sequence[Event]:
        """Return a point-in-time copy of all received events."""
        with self._lock:
            return list(self._events)

    def messages(self) -> list[str]:
        """Return just the messages of the received events, in order."""
        return [e.message for e in self.snapshot()]


def format_event(event: Event) -> str:
    """Render an event as a single human-readable line.

    Format: `<timestamp> <LEVEL> <span path>: <message> key=value ...`
    """
    parts = [event.timestamp.isoformat(timespec="microseconds"), f"{event.severity.name:>5}"]

    names: list[str] = []
    span = event.span
    while span is not None:
        names.append(span.name)
        span = span.parent
    if names:
        parts.append(":".join(reversed(names)) + ":")

    parts.append(event.message)
    for key, value in event.fields.items():
        parts.append(f"{key}={value!r}" if isinstance(value, str) else f"{key}={value}")
    return " ".join(parts)


class ConsoleEventSink:
    """Writes one formatted line per event to a text stream (stdout by default)."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def write(self, event: Event) -> None:
        """Write the formatted event and flush."""
        stream = self._stream if self._stream is not None else sys.stdout
        line = format_event(event)
        with self._lock:
            stream.write(line + "\n")
            stream.flush()

    def close(self) -> None:
        """Flush the stream; it is never closed here."""
        stream = self._stream if self._stream is not None else sys.stdout
        with self._lock:
            stream.flush()


class SpanEventSink:
    """Attaches events to their enclosing span so they are exported with it.

    Events emitted outside any span have nothing to attach to and are skipped,
    as are events arriving after their span closed.
    """

    def write(self, event: Event) -> None:
        """Attach the event to its span, if it has one."""
        if event.span is None:
            return
        event.span.add_event(event)

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""


@dataclass(frozen=True)
class DuckDBOptions:
    path: Path
    table: str = "telemetry_events"


class DuckDBEventSink:
    """DuckDB sink for durable local persistence of events."""

    def __init__(self, *, path: str | Path, table: str = "telemetry_events") -> None:
        """Create (or open) a DuckDB-backed sink at the given path."""
        self._opts = DuckDBOptions(path=Path(path), table=table)
        self._lock = threading.Lock()
        self._conn = duckdb.connect(str(self._opts.path))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        create_sql = f"""
        create table if not exists {self._opts.table} (
          occurred_at timestamptz not null,
          severity varchar not null,
          message varchar not null,
          trace_id varchar,
          span_id varchar,
          span_name varchar,
          fields_json varchar not null
        )
        """
        with self._lock:
            self._conn.execute(create_sql)

    def write(self, event: Event) -> None:
        """Insert a single event; structured fields are stored as stable JSON."""
        fields_json = json.dumps(event.fields, separators=(",", ":"), sort_keys=True, default=str)
        span = event.span
        insert_sql = f"""
        insert into {self._opts.table}
        (occurred_at, severity, message, trace_id, span_id, span_name, fields_json)
        values (?, ?, ?, ?, ?, ?, ?)
        """
        with self._lock:
            self._conn.execute(
                insert_sql,
                [
                    event.timestamp,
                    event.severity.name,
                    event.message,
                    f"{span.trace_id:032x}" if span is not None else None,
                    f"{span.span_id:016x}" if span is not None else None,
                    span.name if span is not None else None,
                    fields_json,
                ],
            )

    def fetch_all(self) -> list[tuple]:
        """Return all stored rows in insertion order."""
        with self._lock:
            return self._conn.execute(
                f"select severity, message, trace_id, span_id, span_name, fields_json "
                f"from {self._opts.table} order by rowid"
            ).fetchall()

    def close(self) -> None:
        """Close the DuckDB connection."""
        with self._lock:
            self._conn.close()
