from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest
from fastapi.testclient import TestClient

from config import Config, DatabaseConfig
from observability import (
    BatchSpanExporter,
    InMemoryEventSink,
    InMemorySpanTransport,
    Severity,
    SpanEventSink,
    SpanStatus,
    TelemetryPipeline,
)
from service import create_app
from service.db import create_pool, fetch_one


class _FakePool:
    def __init__(self, *, fail_all: bool = False) -> None:
        self.fail_all = fail_all
        self.queries: list[str] = []
        self.closed = False

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        self.queries.append(query)
        if self.fail_all or "SYNTAX ERROR" in query:
            raise RuntimeError(f'syntax error at or near "{query.split()[0]}"')
        return {"result": 2}

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def stdout() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def telemetry(stdout: InMemoryEventSink, transport: InMemorySpanTransport) -> TelemetryPipeline:
    exporter = BatchSpanExporter(transport, max_queue_size=64, max_export_batch_size=16, schedule_delay_s=60.0)
    pipeline = TelemetryPipeline(global_level=Severity.INFO, exporter=exporter)
    pipeline.add_sink(stdout, Severity.WARN, name="stdout")
    pipeline.add_sink(SpanEventSink(), Severity.INFO, name="remote")
    return pipeline


def _spans_by_name(transport: InMemorySpanTransport) -> dict[str, Any]:
    return {s.name: s for s in transport.snapshot()}


def test_root_endpoint_traces_sync_and_async_work(
    telemetry: TelemetryPipeline, stdout: InMemoryEventSink, transport: InMemorySpanTransport
):
    pool = _FakePool()
    app = create_app(Config(), telemetry=telemetry, pool=pool)

    with TestClient(app) as client:
        response = client.get("/")

    assert response.status_code == 200
    assert response.text == "ok"
    assert pool.queries == ["SELECT 1 + 1 AS result"]
    assert pool.closed is True

    # INFO is below the stdout threshold.
    assert stdout.messages() == []

    spans = _spans_by_name(transport)
    assert set(spans) == {"root", "some process", "fetch row"}
    assert spans["some process"].parent is spans["root"]
    assert spans["fetch row"].parent is spans["root"]
    assert all(s.status is SpanStatus.OK for s in spans.values())
    assert [e.message for e in spans["root"].events] == ["Processing request"]


def test_root_endpoint_surfaces_database_failure(
    telemetry: TelemetryPipeline, stdout: InMemoryEventSink, transport: InMemorySpanTransport
):
    app = create_app(Config(), telemetry=telemetry, pool=_FakePool(fail_all=True))

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/")

    assert response.status_code == 500
    spans = _spans_by_name(transport)
    assert spans["fetch row"].status is SpanStatus.ERROR
    assert spans["root"].status is SpanStatus.ERROR

    [error] = [e for e in stdout.snapshot() if e.severity is Severity.ERROR]
    assert error.message.startswith("fetch row failed: RuntimeError")
    assert [e.severity for e in spans["fetch row"].events] == [Severity.ERROR]
    assert all(e.severity is not Severity.ERROR for e in spans["root"].events)


def test_cause_error_records_failure_and_still_answers_ok(
    telemetry: TelemetryPipeline, stdout: InMemoryEventSink, transport: InMemorySpanTransport
):
    app = create_app(Config(), telemetry=telemetry, pool=_FakePool())

    with TestClient(app) as client:
        response = client.get("/cause_error")

    assert response.status_code == 200
    assert response.text == "ok"

    warn, error = stdout.snapshot()
    assert (warn.severity, warn.message) == (Severity.WARN, "possible error")
    assert error.severity is Severity.ERROR
    assert "syntax error" in error.message

    spans = _spans_by_name(transport)
    handler, fetch = spans["cause_error"], spans["fetch row"]
    assert [e.message for e in handler.events] == ["Processing request", "possible error"]
    assert [e.severity for e in fetch.events] == [Severity.ERROR]
    assert fetch.parent is handler
    assert fetch.status is SpanStatus.ERROR
    assert handler.status is SpanStatus.OK


def test_requests_get_independent_traces(telemetry: TelemetryPipeline, transport: InMemorySpanTransport):
    app = create_app(Config(), telemetry=telemetry, pool=_FakePool())

    with TestClient(app) as client:
        client.get("/")
        client.get("/")

    roots = [s for s in transport.snapshot() if s.name == "root"]
    assert len(roots) == 2
    assert roots[0].trace_id != roots[1].trace_id
    assert all(s.parent is None for s in roots)


@pytest.mark.asyncio
async def test_fetch_one_requires_a_row():
    class _EmptyPool(_FakePool):
        async def fetchrow(self, query: str, *args: Any) -> None:
            return None

    assert await fetch_one(_FakePool(), "SELECT 1 + 1 AS result") == {"result": 2}
    with pytest.raises(LookupError):
        await fetch_one(_EmptyPool(), "SELECT 1 WHERE false")


@pytest.mark.asyncio
async def test_create_pool_connects_with_dsn(monkeypatch: pytest.MonkeyPatch):
    calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
    checks: list[str] = []

    class _Conn:
        async def fetchval(self, query: str) -> int:
            checks.append(query)
            return 1

    class _Pool:
        @asynccontextmanager
        async def acquire(self) -> AsyncIterator[_Conn]:
            yield _Conn()

    async def fake_create_pool(*args: Any, **kwargs: Any) -> _Pool:
        calls.append((args, kwargs))
        return _Pool()

    monkeypatch.setattr("service.db.asyncpg.create_pool", fake_create_pool)
    cfg = DatabaseConfig(host="db", user="svc", password="s3cr@t", database="demo", min_pool_size=2, max_pool_size=4)

    pool = await create_pool(cfg)

    assert isinstance(pool, _Pool)
    [(args, kwargs)] = calls
    assert args == ("postgresql://svc:s3cr%40t@db:5432/demo",)
    assert (kwargs["min_size"], kwargs["max_size"]) == (2, 4)
    assert checks == ["SELECT 1"]
