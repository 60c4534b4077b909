"""Unit tests for moderation action dispatch and auditing."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import InvariantViolation, NotFoundError, ValidationError
from threadguard.moderation.domain.models import Actor, ModerationAction, Role
from threadguard.moderation.domain.rule_evaluator import Decision
from threadguard.moderation.domain.store import InMemoryModerationStore


class FlakyAuditStore(InMemoryModerationStore):
    """Fails the next ``failures`` audit writes with a connection error."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0
        self.attempts = 0

    async def append_action(self, action: ModerationAction) -> ModerationAction:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("audit table unavailable")
        return await super().append_action(action)


class RecordingNotifier:
    def __init__(self) -> None:
        self.received: list[ModerationAction] = []

    async def notify(self, action: ModerationAction) -> None:
        self.received.append(action)


class ExplodingNotifier:
    async def notify(self, action: ModerationAction) -> None:
        raise RuntimeError("stream down")


async def _seed(store) -> None:
    await store.upsert_actor(Actor(actor_id="u1"))
    await store.upsert_actor(Actor(actor_id="top", role=Role.SUPER_ADMIN))


@pytest.mark.asyncio
async def test_identical_dispatch_within_window_is_deduplicated(community, clock) -> None:
    dispatcher = ActionDispatcher(community)

    first = await dispatcher.dispatch("warn_user", "mod1", now=clock.now(), target_user_id="user1")
    clock.advance(seconds=30)
    second = await dispatcher.dispatch("warn_user", "mod1", now=clock.now(), target_user_id="user1")

    assert second.action_id == first.action_id
    assert len(community.actions) == 1
    assert (await community.get_actor("user1")).warnings == 1

    clock.advance(seconds=31)
    third = await dispatcher.dispatch("warn_user", "mod1", now=clock.now(), target_user_id="user1")
    assert third.action_id != first.action_id
    assert len(community.actions) == 2
    assert (await community.get_actor("user1")).warnings == 2


@pytest.mark.asyncio
async def test_concurrent_identical_dispatches_apply_once(community, clock) -> None:
    dispatcher = ActionDispatcher(community)

    results = await asyncio.gather(
        *(dispatcher.dispatch("ban_user", "mod1", now=clock.now(), target_user_id="user1") for _ in range(5))
    )

    assert len({result.action_id for result in results}) == 1
    assert len(community.actions) == 1


@pytest.mark.asyncio
async def test_targets_and_action_types_are_validated(community, clock) -> None:
    dispatcher = ActionDispatcher(community)
    with pytest.raises(ValidationError):
        await dispatcher.dispatch("ban_user", "mod1", now=clock.now())
    with pytest.raises(ValidationError):
        await dispatcher.dispatch("pin_comment", "mod1", now=clock.now(), target_user_id="user1")
    with pytest.raises(ValidationError):
        await dispatcher.dispatch("vaporize_user", "mod1", now=clock.now(), target_user_id="user1")
    with pytest.raises(ValidationError):
        await dispatcher.dispatch("tag_comment", "mod1", now=clock.now(), target_comment_id="c1")


@pytest.mark.asyncio
async def test_comment_actions_update_state(community, clock) -> None:
    dispatcher = ActionDispatcher(community)
    await dispatcher.dispatch("lock_thread", "mod1", now=clock.now(), target_comment_id="c1")
    await dispatcher.dispatch("pin_comment", "mod1", now=clock.now(), target_comment_id="c1")
    await dispatcher.dispatch(
        "tag_comment", "mod1", now=clock.now(), target_comment_id="c1", details={"tag": "needs-source"}
    )

    comment = await community.get_comment("c1")
    assert comment.locked and comment.pinned
    assert comment.tags == {"needs-source"}
    assert [action.action_type for action in await dispatcher.list_actions(target_comment_id="c1")] == [
        "lock_thread",
        "pin_comment",
        "tag_comment",
    ]


@pytest.mark.asyncio
async def test_role_changes_stay_within_the_ladder(store, clock) -> None:
    await _seed(store)
    dispatcher = ActionDispatcher(store)

    promoted = await dispatcher.dispatch("promote_user", "top", now=clock.now(), target_user_id="u1")
    assert promoted.details["role"] == "moderator"
    assert (await store.get_actor("u1")).role is Role.MODERATOR

    with pytest.raises(InvariantViolation):
        await dispatcher.dispatch("promote_user", "top", now=clock.now(), target_user_id="top")
    with pytest.raises(InvariantViolation):
        await dispatcher.dispatch(
            "demote_user", "top", now=clock.now(), target_user_id="u1", details={"role": "admin"}
        )
    await dispatcher.dispatch("demote_user", "top", now=clock.now(), target_user_id="u1")
    clock.advance(minutes=2)
    with pytest.raises(InvariantViolation):
        await dispatcher.dispatch("demote_user", "top", now=clock.now(), target_user_id="u1")


@pytest.mark.asyncio
async def test_mute_never_shortens_an_existing_mute(store, clock) -> None:
    await _seed(store)
    dispatcher = ActionDispatcher(store)
    await dispatcher.dispatch(
        "mute_user", "top", now=clock.now(), target_user_id="u1", details={"duration_minutes": 600}
    )
    clock.advance(minutes=5)
    await dispatcher.dispatch("mute_user", "top", now=clock.now(), target_user_id="u1")

    actor = await store.get_actor("u1")
    assert actor.muted_until == clock.now() - timedelta(minutes=5) + timedelta(minutes=600)


@pytest.mark.asyncio
async def test_failed_state_change_leaves_no_audit_record(store, clock) -> None:
    dispatcher = ActionDispatcher(store)
    with pytest.raises(NotFoundError):
        await dispatcher.dispatch("ban_user", "mod1", now=clock.now(), target_user_id="ghost")
    assert store.actions == []


@pytest.mark.asyncio
async def test_audit_write_is_retried(clock) -> None:
    store = FlakyAuditStore()
    await _seed(store)
    store.failures = 2
    dispatcher = ActionDispatcher(store)

    action = await dispatcher.dispatch("ban_user", "top", now=clock.now(), target_user_id="u1")

    assert action.audit_pending is False
    assert store.attempts == 3
    assert len(store.actions) == 1


@pytest.mark.asyncio
async def test_audit_failure_after_state_change_is_buffered_not_raised(clock) -> None:
    store = FlakyAuditStore()
    await _seed(store)
    store.failures = 100
    dispatcher = ActionDispatcher(store)

    action = await dispatcher.dispatch("ban_user", "top", now=clock.now(), target_user_id="u1")

    assert action.audit_pending is True
    assert (await store.get_actor("u1")).banned is True
    assert dispatcher.pending_audits == 1
    again = await dispatcher.dispatch("ban_user", "top", now=clock.now(), target_user_id="u1")
    assert again.action_id == action.action_id

    store.failures = 0
    assert await dispatcher.flush_pending_audits() == 1
    assert dispatcher.pending_audits == 0
    assert [stored.action_id for stored in store.actions] == [action.action_id]
    assert store.actions[0].audit_pending is False


@pytest.mark.asyncio
async def test_decision_translates_into_comment_and_user_actions(community, clock) -> None:
    dispatcher = ActionDispatcher(community)
    decision = Decision(hide=True, delete=True, warn=True, escalate=True, severity=5)

    actions = await dispatcher.dispatch_decision(decision, author_id="author", comment_id="c1", now=clock.now())

    assert [action.action_type for action in actions] == ["delete_comment", "warn_user"]
    assert actions[0].target_comment_id == "c1"
    assert actions[1].target_user_id == "author"
    assert (await community.get_comment("c1")).deleted is True


@pytest.mark.asyncio
async def test_notifier_is_informed_without_blocking(community, clock) -> None:
    notifier = RecordingNotifier()
    dispatcher = ActionDispatcher(community, notifier=notifier)
    action = await dispatcher.dispatch("hide_comment", "mod1", now=clock.now(), target_comment_id="c1")
    await asyncio.sleep(0)
    assert notifier.received == [action]

    failing = ActionDispatcher(community, notifier=ExplodingNotifier())
    result = await failing.dispatch("flag_comment", "mod1", now=clock.now(), target_comment_id="c1")
    await asyncio.sleep(0)
    assert result.action_type == "flag_comment"


@pytest.mark.asyncio
async def test_record_audit_writes_entries(community, clock) -> None:
    dispatcher = ActionDispatcher(community)
    entry = await dispatcher.record_audit("report.review", "mod1", "report", "rep-1", {"to": "resolved"}, now=clock.now())
    assert community.audit_log == [entry]
