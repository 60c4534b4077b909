"""Garbage collect expired rate windows and vote histories."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from threadguard.moderation.domain.config import EngineConfig
from threadguard.moderation.domain.engine import ModerationEngine
from threadguard.moderation.domain.window_counter import WindowCounterStore

logger = logging.getLogger(__name__)


async def prune_rate_windows(
    store: WindowCounterStore,
    config: EngineConfig,
    now: datetime | None = None,
) -> int:
    """Drop windows older than twice the configured window size."""

    now = now or datetime.now(timezone.utc)
    removed = await store.prune(now, limits=config.rate_limits)
    logger.info("rate windows pruned", extra={"removed": removed})
    return removed


async def run(engine: ModerationEngine, *, now: Optional[datetime] = None) -> int:
    now = now or engine.clock.now()
    removed = await prune_rate_windows(engine.counters, engine.config, now)
    return removed + engine.votes.prune(now)
