"""Supabase Postgres access with RLS context.

Every sync write goes through a connection where ``app.current_user_id`` is
set via ``SET LOCAL``, so the Row-Level Security policies on the metric
tables see the user the job runs for.

Uses ``asyncpg`` directly — the Supabase Python client doesn't support
SET LOCAL session variables.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("dailysync.db")

# Module-level connection pool — initialized once at app startup
_pool: asyncpg.Pool | None = None

# Every statement is bounded so a stuck store call fails into a retry
_COMMAND_TIMEOUT_SECONDS = 30


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=1,
        max_size=10,
        command_timeout=_COMMAND_TIMEOUT_SECONDS,
    )
    logger.info("Database pool initialized (min=1, max=10)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def is_initialized() -> bool:
    return _pool is not None


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: uuid.UUID | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction, with the RLS user set.

    Usage::

        async with get_connection(user_id=job_user) as conn:
            await conn.execute(upsert_sql, *args)

    ``SET LOCAL`` is scoped to the transaction, so the variable disappears
    when the connection is returned to the pool.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )
            yield conn


async def execute(query: str, *args: Any, user_id: uuid.UUID | None = None) -> str:
    """Execute a single statement with RLS context and return status."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.execute(query, *args)


async def fetch(
    query: str, *args: Any, user_id: uuid.UUID | None = None
) -> list[asyncpg.Record]:
    """Fetch rows with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetch(query, *args)


async def fetchrow(
    query: str, *args: Any, user_id: uuid.UUID | None = None
) -> asyncpg.Record | None:
    """Fetch a single row with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetchrow(query, *args)


async def fetchval(query: str, *args: Any, user_id: uuid.UUID | None = None) -> Any:
    """Fetch a single value with RLS context."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetchval(query, *args)
