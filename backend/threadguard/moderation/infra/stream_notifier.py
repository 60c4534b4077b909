"""Publishes applied moderation actions onto a Redis stream."""

from __future__ import annotations

import json
from typing import Any, Mapping, Protocol

from threadguard.moderation.domain.models import ModerationAction


class RedisStream(Protocol):
    async def xadd(self, stream: str, fields: Mapping[str, Any], maxlen: int | None = None, approximate: bool = True) -> str:
        ...


class RedisStreamNotifier:
    def __init__(self, redis: RedisStream, *, stream_key: str = "mod:actions", maxlen: int | None = 10_000) -> None:
        self.redis = redis
        self.stream_key = stream_key
        self.maxlen = maxlen

    async def notify(self, action: ModerationAction) -> None:
        await self.redis.xadd(self.stream_key, _encode(action), maxlen=self.maxlen, approximate=True)


def _encode(action: ModerationAction) -> dict[str, str]:
    return {
        "action_id": action.action_id,
        "action_type": action.action_type,
        "moderator_id": action.moderator_id,
        "target_user_id": action.target_user_id or "",
        "target_comment_id": action.target_comment_id or "",
        "reason": action.reason or "",
        "details": json.dumps(dict(action.details), default=str),
        "created_at": action.created_at.isoformat(),
    }
