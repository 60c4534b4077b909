"""Redis-backed rate window counters."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from threadguard.infra.redis import redis_client
from threadguard.moderation.domain.window_counter import CounterBackend, WindowKey


class RedisCounterBackend(CounterBackend):
    """INCR + EXPIRE in one transactional pipeline per attempt."""

    def __init__(self, redis: Any | None = None, *, namespace: str = "rl") -> None:
        self.redis = redis if redis is not None else redis_client
        self.namespace = namespace

    async def incr(self, key: WindowKey, ttl_seconds: int) -> int:
        name = key.redis_key(self.namespace)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(name)
            pipe.expire(name, ttl_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def get(self, key: WindowKey) -> int:
        value = await self.redis.get(key.redis_key(self.namespace))
        return int(value) if value is not None else 0

    async def prune(self, cutoff: datetime) -> int:
        # Keys carry a TTL; this only sweeps entries left without one
        threshold = int(cutoff.timestamp())
        removed = 0
        async for raw in self.redis.scan_iter(match=f"{self.namespace}:*"):
            name = raw.decode() if isinstance(raw, bytes) else str(raw)
            try:
                epoch = int(name.rsplit(":", 1)[1])
            except (IndexError, ValueError):
                continue
            if epoch < threshold:
                removed += int(await self.redis.delete(name))
        return removed

