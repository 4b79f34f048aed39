"""asyncpg connection pool.

Every ``get_connection()`` block runs inside one transaction, so multi-row
writes either commit together or not at all.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from stepsync.config import Settings, get_settings

logger = logging.getLogger("stepsync.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=2,
        max_size=20,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=2, max=20)")
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
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection with an open transaction.

    Usage::

        async with get_connection() as conn:
            await conn.execute("UPDATE users SET ... WHERE id = $1", user_id)

    The transaction commits when the block exits normally and rolls back if
    it raises (including on task cancellation).
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn
