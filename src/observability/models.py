"""Telemetry models: severities, events and spans.

Events are immutable records produced at call sites. Spans are the one mutable
object in the pipeline: they are opened by the tracker, collect events while
open, and are closed exactly once.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


class Severity(IntEnum):
    """Ordered event severity (TRACE < DEBUG < INFO < WARN < ERROR)."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    @classmethod
    def parse(cls, value: str | int | Severity) -> Severity:
        """Parse a level from a name ("warn", "WARNING", "info") or an int."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        normalized = value.strip().upper()
        aliases = {"WARNING": "WARN", "ERR": "ERROR", "CRITICAL": "ERROR", "FATAL": "ERROR"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls[normalized]
        except KeyError as exc:
            names = ", ".join(s.name for s in cls)
            raise ValueError(f"Unknown severity {value!r}. Expected one of: {names}") from exc


class SpanStatus(str, Enum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


class Span:
    """A timed, named unit of work.

    A span's end time is set exactly once; `mark_end` returns False on every
    call after the first. Parent references form a tree rooted at the span that
    started the trace.
    """

    def __init__(
        self,
        name: str,
        *,
        trace_id: int,
        span_id: int,
        parent: Span | None = None,
        sampled: bool = True,
        attributes: dict[str, Any] | None = None,
        start_time_ns: int | None = None,
    ) -> None:
        self.name = name
        self.trace_id = trace_id
        self.span_id = span_id
        self.parent = parent
        self.sampled = sampled
        self.attributes: dict[str, Any] = dict(attributes or {})
        self.start_time_ns = start_time_ns if start_time_ns is not None else time.time_ns()
        self.end_time_ns: int | None = None
        self.status = SpanStatus.UNSET
        self.status_description: str | None = None
        self.events: list[Event] = []

        # Span restored as "current" when this one closes.
        self.previous: Span | None = None

        self._lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        """True once the end time has been recorded."""
        return self.end_time_ns is not None

    @property
    def parent_span_id(self) -> int | None:
        """Span id of the parent, or None for a trace root."""
        return self.parent.span_id if self.parent is not None else None

    @property
    def duration_ns(self) -> int | None:
        """Elapsed nanoseconds, or None while the span is open."""
        if self.end_time_ns is None:
            return None
        return self.end_time_ns - self.start_time_ns

    def set_attribute(self, key: str, value: Any) -> None:
        """Set an attribute; ignored once the span is closed."""
        with self._lock:
            if self.end_time_ns is None:
                self.attributes[key] = value

    def add_event(self, event: Event) -> bool:
        """Attach an event to this span; ignored once the span is closed."""
        with self._lock:
            if self.end_time_ns is not None:
                return False
            self.events.append(event)
            return True

    def mark_end(self, status: SpanStatus, description: str | None = None, *, end_time_ns: int | None = None) -> bool:
        """Record the end time and final status exactly once."""
        with self._lock:
            if self.end_time_ns is not None:
                return False
            now = end_time_ns if end_time_ns is not None else time.time_ns()
            self.end_time_ns = max(now, self.start_time_ns)
            self.status = status
            self.status_description = description
            return True

    def __repr__(self) -> str:
        return (
            f"Span(name={self.name!r}, trace_id={self.trace_id:032x}, span_id={self.span_id:016x}, "
            f"parent={self.parent_span_id}, status={self.status.value})"
        )


class Event(BaseModel):
    """A single structured log record, optionally attached to a span."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    severity: Severity
    message: str
    fields: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    # Live reference to the enclosing span; never serialized.
    span: Span | None = Field(default=None, exclude=True, repr=False)

    @property
    def trace_id(self) -> int | None:
        """Trace id of the enclosing span, if any."""
        return self.span.trace_id if self.span is not None else None

    @property
    def span_id(self) -> int | None:
        """Span id of the enclosing span, if any."""
        return self.span.span_id if self.span is not None else None
