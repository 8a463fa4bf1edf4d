"""Shared asyncpg connection pool."""

import asyncio
import logging
from typing import Optional

import asyncpg

from proaccess.config import get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0
COMMAND_TIMEOUT_SECONDS = 10.0
APPLICATION_NAME = "proaccess"

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


async def _open_pool() -> asyncpg.Pool:
    config = get_config()
    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                command_timeout=COMMAND_TIMEOUT_SECONDS,
                server_settings={"application_name": APPLICATION_NAME, "timezone": "UTC"},
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"No database connection within {CONNECT_TIMEOUT_SECONDS:.0f}s - "
            "is PostgreSQL running and reachable at db_dsn?"
        )

    try:
        async with pool.acquire() as conn:
            if await conn.fetchval("SELECT 1") != 1:
                raise RuntimeError("SELECT 1 returned an unexpected value")
    except Exception as e:
        pool.terminate()
        raise RuntimeError(f"Database health check failed: {e}") from e

    logger.info(f"Database pool ready (min={config.db_pool_min}, max={config.db_pool_max})")
    return pool


async def get_pool() -> asyncpg.Pool:
    """
    Return the process-wide pool, opening it on first use.

    Raises:
        asyncio.TimeoutError: Database unreachable within the connect timeout
        RuntimeError: Connected, but the health check query failed
    """
    global _pool

    if _pool is None:
        async with _pool_lock:
            if _pool is None:
                _pool = await _open_pool()
    return _pool


async def close_pool() -> None:
    """Close the pool, terminating it if connections do not drain in time."""
    global _pool

    pool, _pool = _pool, None
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Pool did not drain in time - terminating open connections")
        pool.terminate()
