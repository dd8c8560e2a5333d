"""
asyncpg pool for assignment persistence.

The engine never reads from the database: accounts, reps, and configuration
arrive with each request. Only persistence (a finished assignment set plus its
telemetry row) goes through this pool.

The pool is created lazily on first use, sized from Settings, and shared by the
API process. The batch job closes it when it is done.

Usage:
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(...)
"""

import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from book_engine.core.config import get_settings


logger = logging.getLogger(__name__)

# Process-wide pool; None until first use or after close_db()
_pool: Optional[Pool] = None


async def init_db() -> Pool:
    """
    Create the pool if it does not exist yet and return it.

    Raises:
        ValueError: DATABASE_URL is not configured
        asyncpg.PostgresError / OSError: The database cannot be reached
    """
    global _pool

    if _pool is not None:
        return _pool

    settings = get_settings()
    if not settings.database_url:
        raise ValueError("DATABASE_URL is not configured; persistence is unavailable")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout_seconds,
    )
    logger.info(
        f"Opened asyncpg pool (min={settings.db_pool_min_size}, max={settings.db_pool_max_size})"
    )
    return _pool


async def get_db_pool() -> Pool:
    """Return the shared pool, opening it on first use."""
    return _pool if _pool is not None else await init_db()


async def close_db() -> None:
    """Close the shared pool. A no-op when no pool is open."""
    global _pool

    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
