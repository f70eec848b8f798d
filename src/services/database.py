"""asyncpg connection pool with RLS context.

Every request gets a connection where ``app.current_user_id`` is set via
``set_config(..., true)``, ensuring that Postgres Row-Level Security policies see the
correct identity.  Background work (webhook-triggered syncs, the poller)
runs without a user context under the service role.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("carelink.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(user_id: str | None = None) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection with the RLS user variable set.

    Usage::

        async with get_connection(user_id=ctx.user_id) as conn:
            row = await conn.fetchrow("SELECT * FROM live_vitals WHERE user_id = $1", uid)

    The ``set_config(..., true)`` call is scoped to the current transaction, so the setting
    disappears automatically when the connection is returned to the pool.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )

            yield conn


async def execute(query: str, *args: Any, user_id: str | None = None) -> str:
    """Execute a single statement with RLS context and return status."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.execute(query, *args)


async def fetch(query: str, *args: Any, user_id: str | None = None) -> list[asyncpg.Record]:
    """Fetch rows with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetch(query, *args)


async def fetchrow(
    query: str, *args: Any, user_id: str | None = None
) -> asyncpg.Record | None:
    """Fetch a single row with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetchrow(query, *args)


async def fetchval(query: str, *args: Any, user_id: str | None = None) -> Any:
    """Fetch a single value with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetchval(query, *args)
