"""asyncpg connection pool for the Bloom operational store.

The pool is created once in the application lifespan and handed to the
services that need it.  ``get_connection`` wraps every acquisition in a
transaction so a multi-statement write either lands completely or not at all.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from bloom_sync.config import Settings, get_settings

logger = logging.getLogger("bloom.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.database_pool_min_size,
        max_size=s.database_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.database_pool_min_size,
        s.database_pool_max_size,
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
        raise RuntimeError("Database pool not initialized, call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection inside a transaction.

    Usage::

        async with get_connection(pool) as conn:
            row = await conn.fetchrow("SELECT * FROM clients WHERE id = $1", client_id)
    """
    target = pool or get_pool()
    async with target.acquire() as conn:
        async with conn.transaction():
            yield conn
