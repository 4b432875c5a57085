"""Span tracking with task-local "current span" propagation.

The current span is held in a `ContextVar`. Under asyncio every task runs in
its own copy of the context, so a request that suspends on one worker and
resumes later always sees its own span, never another request's.
`asyncio.create_task` and `asyncio.to_thread` copy the context, which means
child work started inside a span records that span as its parent.
"""

from __future__ import annotations

import asyncio
import contextvars
import random
import threading
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from .models import Span, SpanStatus
from .sampling import Sampler, TraceIdRatioSampler

_T = TypeVar("_T")

_UNSET: Any = object()

SpanCallback = Callable[[Span], None]
ErrorCallback = Callable[[Span, BaseException], None]

# Set on an exception once `on_error` has seen it, so enclosing spans it
# propagates through record error status without reporting it again.
_REPORTED_ATTR = "__telemetry_reported__"


def _nearest_open(span: Span | None) -> Span | None:
    """Walk the `previous` chain to the first span that is still open."""
    while span is not None and span.is_closed:
        span = span.previous
    return span


def _mark_reported(exc: BaseException) -> bool:
    """Flag `exc` as reported. Returns False if it already was."""
    if getattr(exc, _REPORTED_ATTR, False):
        return False
    try:
        setattr(exc, _REPORTED_ATTR, True)
    except AttributeError:
        # __slots__ exception types cannot carry the flag.
        pass
    return True


class SpanTracker:
    """Creates spans, tracks the current one, and hands closed spans off."""

    def __init__(
        self,
        *,
        sampler: Sampler | None = None,
        on_end: SpanCallback | None = None,
        on_error: ErrorCallback | None = None,
        id_seed: int | None = None,
    ) -> None:
        """Create a tracker.

        Args:
            sampler: Root sampling policy; defaults to sampling every trace.
            on_end: Called with each closed, sampled span (typically the exporter).
            on_error: Called while a scoped span is still current when its block
                raises, before the span is closed. Called once per exception:
                enclosing spans the exception propagates through only record
                error status.
            id_seed: Seed for trace/span id generation (tests only).
        """
        self._sampler = sampler or TraceIdRatioSampler(1.0)
        self._on_end = on_end
        self._on_error = on_error
        self._ids = random.Random(id_seed)
        self._ids_lock = threading.Lock()
        self._current: contextvars.ContextVar[Span | None] = contextvars.ContextVar("current_span", default=None)

    def _new_id(self, bits: int) -> int:
        with self._ids_lock:
            value = 0
            while value == 0:
                value = self._ids.getrandbits(bits)
            return value

    def current_span(self) -> Span | None:
        """Return the span current in the calling task (or thread), if any."""
        return _nearest_open(self._current.get())

    def start_span(
        self,
        name: str,
        *,
        parent: Span | None = _UNSET,
        attributes: dict[str, Any] | None = None,
    ) -> Span:
        """Open a span and make it current for the calling context.

        The parent defaults to the current span. Pass `parent=None` to force a
        new trace root.
        """
        previous = self.current_span()
        if parent is _UNSET:
            parent = previous

        if parent is None:
            trace_id = self._new_id(128)
            sampled = self._sampler.should_sample(trace_id, name)
        else:
            trace_id = parent.trace_id
            sampled = parent.sampled

        span = Span(
            name,
            trace_id=trace_id,
            span_id=self._new_id(64),
            parent=parent,
            sampled=sampled,
            attributes=attributes,
        )
        span.previous = previous
        self._current.set(span)
        return span

    def close_span(
        self,
        span: Span,
        status: SpanStatus = SpanStatus.OK,
        description: str | None = None,
    ) -> bool:
        """Close a span and restore the previously current one.

        Returns False (and records nothing) if the span was already closed.
        """
        if not span.mark_end(status, description):
            return False

        # Only unwind when the span is current here; closing a span from a
        # different context must not disturb that context's stack. Spans
        # closed out of order are never restored.
        if self._current.get() is span:
            self._current.set(_nearest_open(span.previous))

        if span.sampled and self._on_end is not None:
            self._on_end(span)
        return True

    @contextmanager
    def span(self, name: str, *, attributes: dict[str, Any] | None = None, **kwargs: Any) -> Iterator[Span]:
        """Scope a block in a span; the span closes on every exit path."""
        span = self.start_span(name, attributes={**(attributes or {}), **kwargs})
        try:
            yield span
        except asyncio.CancelledError:
            self.close_span(span, SpanStatus.ERROR, "cancelled")
            raise
        except BaseException as exc:
            span.set_attribute("exception.type", type(exc).__name__)
            span.set_attribute("exception.message", str(exc))
            if self._on_error is not None and _mark_reported(exc):
                self._on_error(span, exc)
            self.close_span(span, SpanStatus.ERROR, f"{type(exc).__name__}: {exc}")
            raise
        else:
            self.close_span(span, SpanStatus.OK)

    def in_scope(self, name: str, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        """Run a synchronous callable to completion inside a span."""
        with self.span(name):
            return fn(*args, **kwargs)

    async def instrument(self, name: str, awaitable: Awaitable[_T], *, attributes: dict[str, Any] | None = None) -> _T:
        """Await `awaitable` inside a span.

        The span stays current across every suspension of the awaited work and
        closes only once it completes, fails, or is cancelled.
        """
        with self.span(name, attributes=attributes):
            return await awaitable
