"""asyncpg pool shared by the chat repository, the user directory and health checks."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None
_pool_lock = asyncio.Lock()


def _dsn() -> str:
	# asyncpg resolves "localhost" to ::1 first on some hosts.
	return settings.postgres_url.replace("@localhost", "@127.0.0.1")


async def init_pool() -> asyncpg.pool.Pool:
	"""Create the pool once; concurrent callers wait for the same pool."""
	global _pool
	if _pool is not None:
		return _pool
	async with _pool_lock:
		if _pool is None:
			_pool = await asyncpg.create_pool(
				dsn=_dsn(),
				min_size=settings.postgres_min_pool_size,
				max_size=settings.postgres_max_pool_size,
				ssl="require" if settings.postgres_ssl else "disable",
				command_timeout=settings.storage_timeout_seconds,
			)
			LOGGER.info(
				"postgres_pool_ready",
				extra={"min_size": settings.postgres_min_pool_size, "max_size": settings.postgres_max_pool_size},
			)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	"""Return the pool, creating it on first use.

	Raises AssertionError when no pool could be set up (for instance when
	startup skipped Postgres); callers treat that as "use the memory store".
	"""
	if _pool is None:
		await init_pool()
	assert _pool is not None, "postgres pool not initialised"
	return _pool


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
		LOGGER.info("postgres_pool_closed")
