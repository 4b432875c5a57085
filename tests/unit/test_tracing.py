from __future__ import annotations

import asyncio
import threading

import pytest

from observability import Span, SpanStatus, SpanTracker, TraceIdRatioSampler


class _Collector:
    def __init__(self) -> None:
        self.spans: list[Span] = []

    def __call__(self, span: Span) -> None:
        self.spans.append(span)

    def by_name(self, name: str) -> Span:
        [span] = [s for s in self.spans if s.name == name]
        return span


@pytest.fixture
def collected() -> _Collector:
    return _Collector()


@pytest.fixture
def tracker(collected: _Collector) -> SpanTracker:
    return SpanTracker(on_end=collected, id_seed=1)


def test_start_and_close_restore_previous_span(tracker: SpanTracker):
    assert tracker.current_span() is None
    outer = tracker.start_span("outer")
    inner = tracker.start_span("inner")

    assert inner.parent is outer
    assert inner.trace_id == outer.trace_id
    assert tracker.current_span() is inner

    tracker.close_span(inner)
    assert tracker.current_span() is outer
    tracker.close_span(outer)
    assert tracker.current_span() is None


def test_explicit_none_parent_starts_new_trace(tracker: SpanTracker):
    with tracker.span("a") as a:
        detached = tracker.start_span("b", parent=None)
        tracker.close_span(detached)
    assert detached.parent is None
    assert detached.trace_id != a.trace_id


def test_close_twice_is_a_noop(tracker: SpanTracker, collected: _Collector):
    span = tracker.start_span("once")
    assert tracker.close_span(span, SpanStatus.OK) is True
    end = span.end_time_ns

    assert tracker.close_span(span, SpanStatus.ERROR) is False
    assert span.end_time_ns == end
    assert span.status is SpanStatus.OK
    assert collected.spans == [span]


def test_end_time_not_before_start_time(tracker: SpanTracker):
    span = tracker.start_span("clock")
    span.mark_end(SpanStatus.OK, end_time_ns=span.start_time_ns - 1_000)
    assert span.end_time_ns == span.start_time_ns


def test_scoped_span_closes_ok(tracker: SpanTracker, collected: _Collector):
    with tracker.span("work", attributes={"k": "v"}, extra=1) as span:
        assert tracker.current_span() is span
    assert span.status is SpanStatus.OK
    assert span.attributes == {"k": "v", "extra": 1}
    assert span.end_time_ns is not None and span.end_time_ns >= span.start_time_ns
    assert tracker.current_span() is None
    assert collected.spans == [span]


def test_scoped_span_closes_with_error_and_reraises(collected: _Collector):
    errors: list[tuple[Span, BaseException]] = []
    tracker = SpanTracker(on_end=collected, on_error=lambda s, e: errors.append((s, e)))

    with pytest.raises(ZeroDivisionError):
        with tracker.span("divide"):
            1 / 0

    span = collected.by_name("divide")
    assert span.status is SpanStatus.ERROR
    assert span.attributes["exception.type"] == "ZeroDivisionError"
    assert errors and errors[0][0] is span
    assert tracker.current_span() is None


def test_error_is_reported_once_by_the_innermost_span(collected: _Collector):
    errors: list[tuple[Span, BaseException]] = []
    tracker = SpanTracker(on_end=collected, on_error=lambda s, e: errors.append((s, e)))

    with pytest.raises(RuntimeError):
        with tracker.span("outer"):
            with tracker.span("middle"):
                with tracker.span("inner"):
                    raise RuntimeError("db down")

    assert [s.name for s, _ in errors] == ["inner"]
    for name in ("inner", "middle", "outer"):
        span = collected.by_name(name)
        assert span.status is SpanStatus.ERROR
        assert span.attributes["exception.type"] == "RuntimeError"


def test_spans_closed_out_of_order_are_not_restored(tracker: SpanTracker, collected: _Collector):
    a = tracker.start_span("A")
    b = tracker.start_span("B")

    tracker.close_span(a)
    assert tracker.current_span() is b
    tracker.close_span(b)
    assert tracker.current_span() is None

    c = tracker.start_span("C")
    assert c.parent is None
    assert c.trace_id != a.trace_id
    tracker.close_span(c)
    assert [s.name for s in collected.spans] == ["A", "B", "C"]


def test_out_of_order_close_resumes_nearest_open_span(tracker: SpanTracker):
    root = tracker.start_span("root")
    a = tracker.start_span("A")
    b = tracker.start_span("B")

    tracker.close_span(a)
    tracker.close_span(b)
    assert tracker.current_span() is root

    child = tracker.start_span("child")
    assert child.parent is root
    tracker.close_span(child)
    tracker.close_span(root)
    assert tracker.current_span() is None


def test_in_scope_returns_result(tracker: SpanTracker, collected: _Collector):
    with tracker.span("request"):
        result = tracker.in_scope("hash", lambda a, b: a + b, 2, 3)
    assert result == 5
    assert collected.by_name("hash").parent is collected.by_name("request")


@pytest.mark.asyncio
async def test_instrument_keeps_span_current_across_suspension(tracker: SpanTracker, collected: _Collector):
    seen: list[Span | None] = []

    async def work() -> str:
        seen.append(tracker.current_span())
        await asyncio.sleep(0)
        seen.append(tracker.current_span())
        await asyncio.sleep(0.01)
        seen.append(tracker.current_span())
        return "done"

    with tracker.span("request") as request:
        result = await tracker.instrument("fetch row", work())

    fetch = collected.by_name("fetch row")
    assert result == "done"
    assert seen == [fetch, fetch, fetch]
    assert fetch.parent is request
    assert fetch.end_time_ns <= request.end_time_ns


@pytest.mark.asyncio
async def test_instrument_records_failure_and_propagates(tracker: SpanTracker, collected: _Collector):
    async def failing() -> None:
        await asyncio.sleep(0)
        raise LookupError("no rows")

    with pytest.raises(LookupError):
        await tracker.instrument("fetch row", failing())

    assert collected.by_name("fetch row").status is SpanStatus.ERROR


@pytest.mark.asyncio
async def test_concurrent_tasks_keep_their_own_current_span(tracker: SpanTracker, collected: _Collector):
    async def handle(name: str, delay: float) -> None:
        with tracker.span(name):
            await asyncio.sleep(delay)
            with tracker.span(f"{name}.child"):
                await asyncio.sleep(delay)
            assert tracker.current_span().name == name

    await asyncio.gather(handle("a", 0.02), handle("b", 0.01), handle("c", 0.0))

    for name in ["a", "b", "c"]:
        parent = collected.by_name(name)
        child = collected.by_name(f"{name}.child")
        assert child.parent is parent
        assert child.trace_id == parent.trace_id
        assert parent.parent is None
    assert len({collected.by_name(n).trace_id for n in "abc"}) == 3


@pytest.mark.asyncio
async def test_child_opened_on_another_thread_keeps_parent(tracker: SpanTracker, collected: _Collector):
    threads: list[str] = []

    def blocking() -> None:
        threads.append(threading.current_thread().name)
        with tracker.span("in thread"):
            pass

    with tracker.span("P") as parent:
        await asyncio.sleep(0)
        await asyncio.to_thread(blocking)
        await asyncio.sleep(0)
        assert tracker.current_span() is parent

    child = collected.by_name("in thread")
    assert threads[0] != threading.current_thread().name
    assert child.parent is parent
    assert child.end_time_ns <= parent.end_time_ns


@pytest.mark.asyncio
async def test_spawned_task_inherits_parent(tracker: SpanTracker, collected: _Collector):
    async def background() -> None:
        with tracker.span("spawned"):
            await asyncio.sleep(0)

    with tracker.span("P"):
        await asyncio.create_task(background())

    assert collected.by_name("spawned").parent is collected.by_name("P")


@pytest.mark.asyncio
async def test_cancelled_request_still_closes_span(tracker: SpanTracker, collected: _Collector):
    started = asyncio.Event()

    async def handler() -> None:
        with tracker.span("request"):
            started.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(handler())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    span = collected.by_name("request")
    assert span.status is SpanStatus.ERROR
    assert span.status_description == "cancelled"


def test_unsampled_trace_is_not_handed_off(collected: _Collector):
    tracker = SpanTracker(sampler=TraceIdRatioSampler(0.0), on_end=collected)
    with tracker.span("root") as root:
        with tracker.span("child") as child:
            pass
    assert root.sampled is False
    assert child.sampled is False
    assert collected.spans == []


def test_span_ids_are_nonzero_and_unique(tracker: SpanTracker):
    spans = [tracker.start_span(f"s{i}", parent=None) for i in range(50)]
    assert all(s.span_id and s.trace_id for s in spans)
    assert len({s.span_id for s in spans}) == 50
