"""FastAPI application: two endpoints exercising spans, events and the database.

The pipeline and the pool are created once in the lifespan handler and stored
on `app.state`; handlers receive them through dependencies rather than module
globals.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse

from config import Config, load_config
from observability import TelemetryPipeline

from .db import RowSource, create_pool, fetch_one
from .passwords import hash_password


def get_telemetry(request: Request) -> TelemetryPipeline:
    return request.app.state.telemetry


def get_pool(request: Request) -> RowSource:
    return request.app.state.db_pool


def create_app(
    config: Config | None = None,
    *,
    telemetry: TelemetryPipeline | None = None,
    pool: RowSource | None = None,
) -> FastAPI:
    """Build the application.

    `telemetry` and `pool` may be injected (tests); otherwise they are built
    from `config` on startup. Injected collaborators are still shut down with
    the application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = config if config is not None else load_config()
        app.state.telemetry = telemetry if telemetry is not None else TelemetryPipeline.from_config(cfg.telemetry)
        try:
            app.state.db_pool = pool if pool is not None else await create_pool(cfg.database)
        except Exception as exc:
            app.state.telemetry.error("failed to connect to the database", error=repr(exc))
            app.state.telemetry.shutdown()
            raise
        try:
            yield
        finally:
            await app.state.db_pool.close()
            app.state.telemetry.shutdown()

    app = FastAPI(title="dual-sink-demo", lifespan=lifespan)

    @app.get("/", response_class=PlainTextResponse)
    async def root(
        telemetry: TelemetryPipeline = Depends(get_telemetry),
        pool: RowSource = Depends(get_pool),
    ) -> str:
        with telemetry.span("root"):
            telemetry.info("Processing request")

            telemetry.in_scope("some process", hash_password, "password", 4)

            # A failed query fails the request.
            await telemetry.instrument("fetch row", fetch_one(pool, "SELECT 1 + 1 AS result"))
        return "ok"

    @app.get("/cause_error", response_class=PlainTextResponse)
    async def cause_error(
        telemetry: TelemetryPipeline = Depends(get_telemetry),
        pool: RowSource = Depends(get_pool),
    ) -> str:
        with telemetry.span("cause_error"):
            # Below the stdout threshold: exported only.
            telemetry.info("Processing request")

            telemetry.warn("possible error")

            try:
                await telemetry.instrument("fetch row", fetch_one(pool, "SQL SYNTAX ERROR"))
            except Exception:  # noqa: BLE001 - already recorded as an ERROR event on the span
                pass
        return "ok"

    return app
