"""Shared asyncpg pool for the payment store and the migration runner."""

import asyncio
import logging
from typing import Optional

import asyncpg

from leaguehq.config import get_config
from leaguehq.config.settings import AppConfig

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


async def _verify(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        result = await conn.fetchval("SELECT 1")
    if result != 1:
        raise RuntimeError(f"Health check failed: expected 1, got {result}")


async def _open(config: AppConfig) -> asyncpg.Pool:
    timeout = config.db_connect_timeout_seconds
    try:
        return await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                command_timeout=config.db_command_timeout_seconds,
                server_settings={"application_name": "leaguehq", "timezone": "UTC"},
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise asyncio.TimeoutError(
            f"Database connection timed out after {timeout} seconds. "
            "Ensure PostgreSQL is running and accessible."
        ) from e


async def get_pool() -> asyncpg.Pool:
    """
    Return the process-wide pool, opening and health-checking it on first use.

    Raises:
        RuntimeError: The pool opened but SELECT 1 failed
        asyncio.TimeoutError: PostgreSQL did not accept connections in time
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()
    pool = await _open(config)
    try:
        await _verify(pool)
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    _pool = pool
    logger.info(f"Database pool ready: min={config.db_pool_min}, max={config.db_pool_max}")
    return _pool


async def close_pool() -> None:
    """Close the pool if open; terminate it when connections do not drain in 5 seconds."""
    global _pool
    if _pool is None:
        return

    pool, _pool = _pool, None
    try:
        await asyncio.wait_for(pool.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Pool close timed out, terminating (a connection was not released)")
        pool.terminate()
