"""Database access for the demo endpoints (asyncpg connection pool)."""

from __future__ import annotations

from typing import Any, Protocol

import asyncpg

from config import DatabaseConfig


class RowSource(Protocol):
    """The slice of `asyncpg.Pool` the handlers rely on."""

    async def fetchrow(self, query: str, *args: Any) -> Any:
        ...

    async def close(self) -> None:
        ...


async def create_pool(cfg: DatabaseConfig) -> asyncpg.Pool:
    """Open a connection pool and verify it with a trivial query."""
    pool = await asyncpg.create_pool(
        cfg.dsn,
        min_size=cfg.min_pool_size,
        max_size=cfg.max_pool_size,
        command_timeout=60.0,
    )
    async with pool.acquire() as conn:
        await conn.fetchval("SELECT 1")
    return pool


async def fetch_one(pool: RowSource, query: str, *args: Any) -> dict[str, Any]:
    """Run a query and return its first row as a dict.

    Raises `LookupError` when the query returns no rows; database errors
    propagate unchanged.
    """
    row = await pool.fetchrow(query, *args)
    if row is None:
        raise LookupError(f"no rows returned for query: {query}")
    return dict(row)
