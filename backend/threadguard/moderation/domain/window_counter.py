"""Fixed, boundary-aligned rate windows per (actor, action type)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from threadguard.moderation.domain.config import RateLimitConfig
from threadguard.moderation.domain.errors import DependencyUnavailable
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import RateDecision, RateWindow
from threadguard.moderation.domain.resilience import call_external
from threadguard.obs import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WindowKey:
    actor_id: str
    action_type: str
    window_start: datetime

    def redis_key(self, namespace: str = "rl") -> str:
        return f"{namespace}:{self.action_type}:{self.actor_id}:{int(self.window_start.timestamp())}"


class CounterBackend(Protocol):
    """Atomic compare-and-increment storage for rate windows."""

    async def incr(self, key: WindowKey, ttl_seconds: int) -> int:
        ...

    async def get(self, key: WindowKey) -> int:
        ...

    async def prune(self, cutoff: datetime) -> int:
        ...


class InMemoryCounterBackend(CounterBackend):
    def __init__(self) -> None:
        self._counts: dict[WindowKey, int] = {}
        self._locks = KeyedLocks()

    async def incr(self, key: WindowKey, ttl_seconds: int) -> int:
        async with self._locks.hold(key):
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
            return count

    async def get(self, key: WindowKey) -> int:
        return self._counts.get(key, 0)

    async def prune(self, cutoff: datetime) -> int:
        expired = [key for key in self._counts if key.window_start < cutoff]
        for key in expired:
            del self._counts[key]
        return len(expired)

    def windows(self) -> list[RateWindow]:
        return [
            RateWindow(
                actor_id=key.actor_id,
                action_type=key.action_type,
                window_start=key.window_start,
                count=count,
            )
            for key, count in self._counts.items()
        ]


def window_start(at: datetime, window_seconds: int) -> datetime:
    """Truncate ``at`` to the start of its epoch-aligned window."""

    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    epoch = int(at.timestamp())
    aligned = epoch - (epoch % window_seconds)
    return datetime.fromtimestamp(aligned, tz=timezone.utc)


class WindowCounterStore:
    """Rate-limit gate counting attempts in aligned windows."""

    def __init__(self, backend: CounterBackend, limits: RateLimitConfig | None = None) -> None:
        self._backend = backend
        self._limits = limits or RateLimitConfig()

    @property
    def limits(self) -> RateLimitConfig:
        return self._limits

    def _key(self, actor_id: str, action_type: str, at: datetime, limits: RateLimitConfig) -> WindowKey:
        return WindowKey(
            actor_id=actor_id,
            action_type=action_type,
            window_start=window_start(at, limits.window_seconds),
        )

    async def increment(
        self,
        actor_id: str,
        action_type: str,
        at: datetime,
        *,
        limits: Optional[RateLimitConfig] = None,
    ) -> RateDecision:
        """Count one attempt and report whether it stays within the limit.

        The increment is kept even when the limit is exceeded; denied attempts
        still count. Backend failures deny the attempt.
        """

        limits = limits or self._limits
        key = self._key(actor_id, action_type, at, limits)
        limit = limits.limit_for(action_type)
        reset_time = key.window_start + timedelta(seconds=limits.window_seconds)
        ttl = limits.window_seconds * 2
        try:
            count = await call_external("rate_increment", lambda: self._backend.incr(key, ttl))
        except DependencyUnavailable:
            metrics.MOD_RATE_BACKEND_ERRORS_TOTAL.labels(mode="fail_closed").inc()
            logger.error(
                "rate counter unavailable; denying write",
                extra={"actor_id": actor_id, "action_type": action_type},
            )
            return RateDecision(
                action_type=action_type,
                allowed=False,
                current_count=-1,
                limit=limit,
                reset_time=reset_time,
            )
        allowed = count <= limit
        metrics.MOD_RATE_DECISIONS_TOTAL.labels(action_type=action_type, allowed=str(allowed).lower()).inc()
        if not allowed:
            logger.info(
                "rate limit exceeded",
                extra={"actor_id": actor_id, "action_type": action_type, "count": count, "limit": limit},
            )
        return RateDecision(
            action_type=action_type,
            allowed=allowed,
            current_count=count,
            limit=limit,
            reset_time=reset_time,
        )

    async def peek(
        self,
        actor_id: str,
        action_type: str,
        at: datetime,
        *,
        limits: Optional[RateLimitConfig] = None,
    ) -> RateDecision:
        """Read-only rate query; backend failures report the actor as allowed."""

        limits = limits or self._limits
        key = self._key(actor_id, action_type, at, limits)
        limit = limits.limit_for(action_type)
        reset_time = key.window_start + timedelta(seconds=limits.window_seconds)
        try:
            count = await call_external("rate_peek", lambda: self._backend.get(key))
        except DependencyUnavailable:
            metrics.MOD_RATE_BACKEND_ERRORS_TOTAL.labels(mode="fail_open").inc()
            logger.warning(
                "rate counter unavailable; reporting open",
                extra={"actor_id": actor_id, "action_type": action_type},
            )
            return RateDecision(
                action_type=action_type,
                allowed=True,
                current_count=0,
                limit=limit,
                reset_time=reset_time,
            )
        return RateDecision(
            action_type=action_type,
            allowed=count < limit,
            current_count=count,
            limit=limit,
            reset_time=reset_time,
        )

    async def prune(self, now: datetime, *, limits: Optional[RateLimitConfig] = None) -> int:
        """Drop windows older than twice the window size."""

        limits = limits or self._limits
        cutoff = window_start(now, limits.window_seconds) - timedelta(seconds=limits.window_seconds * 2)
        removed = await call_external("rate_prune", lambda: self._backend.prune(cutoff))
        if removed:
            metrics.MOD_RATE_WINDOWS_PRUNED_TOTAL.inc(removed)
        return removed
