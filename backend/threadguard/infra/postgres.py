"""Process-wide asyncpg pool backing the Postgres moderation store and counters.

`bootstrap()` in the moderation container opens it on first use and `shutdown()`
closes it. Tests inject a stand-in through `set_pool`.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import asyncpg

from threadguard.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None
_pool_lock = asyncio.Lock()


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	async with _pool_lock:
		# Concurrent first callers share one pool
		if _pool is None:
			_pool = await asyncpg.create_pool(
				dsn=settings.postgres_url,
				min_size=settings.postgres_min_pool_size,
				max_size=settings.postgres_max_pool_size,
				command_timeout=settings.external_call_timeout_seconds,
				server_settings={"application_name": settings.service_name},
			)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
