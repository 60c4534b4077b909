"""Lightweight service container shared by moderation entry points."""

from __future__ import annotations

from typing import Optional

import asyncpg
from redis.asyncio import Redis

from threadguard import obs
from threadguard.infra import postgres
from threadguard.infra.redis import RedisProxy, redis_client
from threadguard.moderation.domain.clock import Clock
from threadguard.moderation.domain.config import EngineConfig, load_engine_config
from threadguard.moderation.domain.dispatcher import Notifier
from threadguard.moderation.domain.engine import ModerationEngine
from threadguard.moderation.domain.store import InMemoryModerationStore, ModerationStore
from threadguard.moderation.domain.window_counter import CounterBackend, InMemoryCounterBackend
from threadguard.moderation.infra.postgres_store import PostgresCounterBackend, PostgresModerationStore
from threadguard.moderation.infra.redis_counter import RedisCounterBackend
from threadguard.moderation.infra.stream_notifier import RedisStreamNotifier
from threadguard.settings import settings

_store: ModerationStore = InMemoryModerationStore()
_engine = ModerationEngine(_store, counter_backend=InMemoryCounterBackend())


def configure(
    *,
    store: Optional[ModerationStore] = None,
    counter_backend: Optional[CounterBackend] = None,
    config: Optional[EngineConfig] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
) -> ModerationEngine:
    """Rebuild the shared engine; omitted collaborators fall back to in-memory ones."""

    global _store, _engine
    _store = store or InMemoryModerationStore()
    if config is None:
        config = load_engine_config(settings.moderation_config_path)
    _engine = ModerationEngine(
        _store,
        counter_backend=counter_backend or InMemoryCounterBackend(),
        config=config,
        notifier=notifier,
        clock=clock,
    )
    return _engine


def configure_postgres(
    pool: asyncpg.Pool,
    redis_conn: Redis | RedisProxy | None = None,
    *,
    config: Optional[EngineConfig] = None,
    clock: Optional[Clock] = None,
) -> ModerationEngine:
    redis_conn = redis_conn if redis_conn is not None else redis_client
    backend: CounterBackend
    if settings.counter_backend == "redis":
        backend = RedisCounterBackend(redis_conn)
    elif settings.counter_backend == "postgres":
        backend = PostgresCounterBackend(pool)
    else:
        backend = InMemoryCounterBackend()
    return configure(
        store=PostgresModerationStore(pool),
        counter_backend=backend,
        config=config,
        notifier=RedisStreamNotifier(redis_conn, stream_key=settings.notifier_stream),
        clock=clock,
    )


def get_engine() -> ModerationEngine:
    return _engine


def get_store() -> ModerationStore:
    return _store


async def bootstrap(
    *,
    config: Optional[EngineConfig] = None,
    clock: Optional[Clock] = None,
) -> ModerationEngine:
    """Wire the shared engine against the process-wide asyncpg pool."""

    obs.init()
    pool = await postgres.get_pool()
    return configure_postgres(pool, config=config, clock=clock)


async def shutdown() -> None:
    await postgres.close_pool()
