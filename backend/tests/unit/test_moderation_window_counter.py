"""Unit tests for the fixed-window rate counters."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from threadguard.moderation.domain.config import RateLimitConfig
from threadguard.moderation.domain.window_counter import (
    InMemoryCounterBackend,
    WindowCounterStore,
    WindowKey,
    window_start,
)


class BrokenBackend:
    def __init__(self) -> None:
        self.calls = 0

    async def incr(self, key: WindowKey, ttl_seconds: int) -> int:
        self.calls += 1
        raise ConnectionError("counter offline")

    async def get(self, key: WindowKey) -> int:
        self.calls += 1
        raise ConnectionError("counter offline")

    async def prune(self, cutoff: datetime) -> int:
        return 0


def _limits(**limits: int) -> RateLimitConfig:
    return RateLimitConfig(window_seconds=3600, limits=limits)


@pytest.mark.asyncio
async def test_limit_is_inclusive_and_next_attempt_denied(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend(), _limits(comment=3))
    now = clock.now()

    decisions = [await counters.increment("u1", "comment", now) for _ in range(3)]
    assert all(decision.allowed for decision in decisions)
    assert [decision.current_count for decision in decisions] == [1, 2, 3]

    denied = await counters.increment("u1", "comment", now)
    assert denied.allowed is False
    assert denied.current_count == 4
    assert denied.limit == 3
    assert denied.reset_time == datetime(2024, 3, 4, 13, 0, tzinfo=timezone.utc)
    assert denied.retry_after_seconds(now) == 3600


@pytest.mark.asyncio
async def test_new_window_starts_fresh(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend(), _limits(comment=2))
    for _ in range(3):
        await counters.increment("u1", "comment", clock.now())

    later = clock.advance(minutes=75)
    decision = await counters.increment("u1", "comment", later)

    assert decision.allowed is True
    assert decision.current_count == 1
    assert decision.reset_time == datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_counts_are_scoped_per_actor_and_action(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend(), _limits(comment=1, vote=1))
    now = clock.now()
    assert (await counters.increment("u1", "comment", now)).allowed
    assert (await counters.increment("u1", "vote", now)).allowed
    assert (await counters.increment("u2", "comment", now)).allowed
    assert not (await counters.increment("u1", "comment", now)).allowed


@pytest.mark.asyncio
async def test_unconfigured_action_uses_default_limit(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend())
    decision = await counters.increment("u1", "share", clock.now())
    assert decision.limit == 60


@pytest.mark.asyncio
async def test_peek_does_not_consume(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend(), _limits(report=2))
    now = clock.now()
    await counters.increment("u1", "report", now)

    first = await counters.peek("u1", "report", now)
    second = await counters.peek("u1", "report", now)
    assert first.current_count == second.current_count == 1
    assert first.allowed is True

    await counters.increment("u1", "report", now)
    exhausted = await counters.peek("u1", "report", now)
    assert exhausted.allowed is False


@pytest.mark.asyncio
async def test_increment_fails_closed_when_backend_down(clock) -> None:
    backend = BrokenBackend()
    counters = WindowCounterStore(backend, _limits(comment=5))

    decision = await counters.increment("u1", "comment", clock.now())

    assert decision.allowed is False
    assert decision.current_count == -1
    assert backend.calls == 3


@pytest.mark.asyncio
async def test_peek_fails_open_when_backend_down(clock) -> None:
    counters = WindowCounterStore(BrokenBackend(), _limits(comment=5))
    decision = await counters.peek("u1", "comment", clock.now())
    assert decision.allowed is True


@pytest.mark.asyncio
async def test_concurrent_increments_never_over_admit(clock) -> None:
    counters = WindowCounterStore(InMemoryCounterBackend(), _limits(vote=30))
    now = clock.now()

    decisions = await asyncio.gather(*(counters.increment("u1", "vote", now) for _ in range(50)))

    assert sum(1 for decision in decisions if decision.allowed) == 30
    assert sorted(decision.current_count for decision in decisions) == list(range(1, 51))


@pytest.mark.asyncio
async def test_prune_keeps_recent_windows(clock) -> None:
    backend = InMemoryCounterBackend()
    counters = WindowCounterStore(backend, _limits(comment=5))
    await counters.increment("u1", "comment", clock.now())

    assert await counters.prune(clock.now() + timedelta(hours=2)) == 0
    assert len(backend.windows()) == 1
    assert await counters.prune(clock.now() + timedelta(hours=3)) == 1
    assert backend.windows() == []


def test_window_start_is_epoch_aligned() -> None:
    at = datetime(2024, 3, 4, 12, 59, 59)
    assert window_start(at, 3600) == datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
    assert window_start(at, 300) == datetime(2024, 3, 4, 12, 55, tzinfo=timezone.utc)
