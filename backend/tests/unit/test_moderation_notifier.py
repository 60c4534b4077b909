from __future__ import annotations

import json

import pytest

from threadguard.moderation.domain.models import ModerationAction
from threadguard.moderation.infra.stream_notifier import RedisStreamNotifier


@pytest.mark.asyncio
async def test_notifier_appends_action_to_stream(fake_redis, clock) -> None:
    notifier = RedisStreamNotifier(fake_redis)
    action = ModerationAction(
        action_id="act-1",
        action_type="mute_user",
        moderator_id="system",
        target_user_id="u1",
        target_comment_id=None,
        details={"duration_minutes": 60, "scope": "vote"},
        reason="vote_abuse:rapid_voting",
        created_at=clock.now(),
    )

    await notifier.notify(action)

    entries = await fake_redis.xrange("mod:actions")
    assert len(entries) == 1
    _entry_id, fields = entries[0]
    assert fields["action_type"] == "mute_user"
    assert fields["target_user_id"] == "u1"
    assert fields["target_comment_id"] == ""
    assert json.loads(fields["details"]) == {"duration_minutes": 60, "scope": "vote"}
