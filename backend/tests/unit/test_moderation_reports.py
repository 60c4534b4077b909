"""Unit tests for the report lifecycle."""

from __future__ import annotations

from datetime import timedelta

import pytest

from threadguard.moderation.domain.config import ReportThresholds
from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import (
    ConflictError,
    DependencyUnavailable,
    DuplicateReportError,
    NotFoundError,
    ValidationError,
)
from threadguard.moderation.domain.models import Actor, CommentState, ReportStatus
from threadguard.moderation.domain.reports import ReportLifecycle
from threadguard.moderation.domain.store import InMemoryModerationStore


class FlakyActorStore(InMemoryModerationStore):
    """Fails actor updates with a connection error while ``failing`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    async def apply_actor_change(self, actor_id, changes):
        if self.failing:
            raise ConnectionError("actor table unavailable")
        return await super().apply_actor_change(actor_id, changes)


async def _flaky_community() -> FlakyActorStore:
    store = FlakyActorStore()
    await store.upsert_actor(Actor(actor_id="author"))
    for idx in range(1, 9):
        await store.upsert_actor(Actor(actor_id=f"r{idx}"))
    await store.upsert_comment(CommentState(comment_id="c1", author_id="author"))
    return store


def _lifecycle(store, **thresholds) -> ReportLifecycle:
    return ReportLifecycle(store=store, dispatcher=ActionDispatcher(store), thresholds=ReportThresholds(**thresholds))


async def _file(lifecycle, clock, reporter: str, reason: str = "spam", comment_id: str = "c1"):
    return await lifecycle.file_report(
        comment_id=comment_id,
        reporter_id=reporter,
        reason=reason,
        notes=None,
        now=clock.now(),
    )


@pytest.mark.asyncio
async def test_duplicate_report_rejected_for_same_reporter(community, clock) -> None:
    lifecycle = _lifecycle(community)
    report = await _file(lifecycle, clock, "r1")
    assert report.status is ReportStatus.PENDING
    assert report.priority == 3

    with pytest.raises(DuplicateReportError):
        await _file(lifecycle, clock, "r1", reason="offensive")

    second = await _file(lifecycle, clock, "r2")
    assert second.report_id != report.report_id
    assert [entry.event for entry in community.audit_log] == ["report.create", "report.create"]


@pytest.mark.asyncio
async def test_invalid_reports_are_rejected(community, clock) -> None:
    lifecycle = _lifecycle(community)
    with pytest.raises(ValidationError):
        await _file(lifecycle, clock, "author")
    with pytest.raises(ValidationError):
        await _file(lifecycle, clock, "r1", reason="boring")
    with pytest.raises(NotFoundError):
        await _file(lifecycle, clock, "r1", comment_id="nope")


@pytest.mark.asyncio
async def test_thresholds_warn_then_mute_the_author(community, clock) -> None:
    lifecycle = _lifecycle(community)
    for idx in range(1, 6):
        await _file(lifecycle, clock, f"r{idx}")

    assert [action.action_type for action in community.actions] == ["warn_user", "mute_user"]
    assert all(action.target_user_id == "author" for action in community.actions)
    mute = community.actions[1]
    assert mute.moderator_id == "system"
    assert mute.details["report_count"] == 5
    author = await community.get_actor("author")
    assert author.warnings == 1
    assert author.muted_until == clock.now() + timedelta(minutes=24 * 60)


@pytest.mark.asyncio
async def test_ban_fires_at_tenth_open_report(community, clock) -> None:
    lifecycle = _lifecycle(community)
    for idx in range(1, 11):
        await _file(lifecycle, clock, f"r{idx}")
    author = await community.get_actor("author")
    assert author.banned is True
    assert [action.action_type for action in community.actions] == ["warn_user", "mute_user", "ban_user"]


@pytest.mark.asyncio
async def test_dismissed_reports_do_not_count_towards_thresholds(community, clock) -> None:
    lifecycle = _lifecycle(community)
    first = await _file(lifecycle, clock, "r1")
    await _file(lifecycle, clock, "r2")
    await lifecycle.review_report(
        report_id=first.report_id,
        moderator_id="mod1",
        new_status="dismissed",
        notes="not spam",
        now=clock.now(),
    )

    await _file(lifecycle, clock, "r3")
    assert community.actions == []
    await _file(lifecycle, clock, "r4")
    assert [action.action_type for action in community.actions] == ["warn_user"]


@pytest.mark.asyncio
async def test_review_moves_to_terminal_state(community, clock) -> None:
    lifecycle = _lifecycle(community)
    report = await _file(lifecycle, clock, "r1")
    clock.advance(minutes=5)

    resolved = await lifecycle.review_report(
        report_id=report.report_id,
        moderator_id="mod1",
        new_status=ReportStatus.RESOLVED,
        notes="removed",
        now=clock.now(),
    )

    assert resolved.status is ReportStatus.RESOLVED
    assert resolved.reviewed_by == "mod1"
    assert resolved.reviewed_at == clock.now()
    assert resolved.version == report.version + 1
    assert community.audit_log[-1].event == "report.review"
    with pytest.raises(ValidationError):
        await lifecycle.review_report(
            report_id=report.report_id,
            moderator_id="mod1",
            new_status="reviewed",
            notes=None,
            now=clock.now(),
        )


@pytest.mark.asyncio
async def test_review_guards(community, clock) -> None:
    lifecycle = _lifecycle(community)
    report = await _file(lifecycle, clock, "r1")

    with pytest.raises(ValidationError):
        await lifecycle.review_report(
            report_id=report.report_id, moderator_id="user1", new_status="resolved", notes=None, now=clock.now()
        )
    with pytest.raises(ValidationError):
        await lifecycle.review_report(
            report_id=report.report_id, moderator_id="mod1", new_status="escalated", notes=None, now=clock.now()
        )
    with pytest.raises(ConflictError):
        await lifecycle.review_report(
            report_id=report.report_id,
            moderator_id="mod1",
            new_status="reviewed",
            notes=None,
            now=clock.now(),
            expected_version=report.version + 3,
        )
    with pytest.raises(NotFoundError):
        await lifecycle.review_report(
            report_id="missing", moderator_id="mod1", new_status="reviewed", notes=None, now=clock.now()
        )


@pytest.mark.asyncio
async def test_pending_queue_orders_by_priority_then_age(community, clock) -> None:
    lifecycle = _lifecycle(community, auto_warn_threshold=100, auto_mute_threshold=101, auto_ban_threshold=102)
    await community.upsert_comment(CommentState(comment_id="c2", author_id="user1"))
    off_topic = await _file(lifecycle, clock, "r1", reason="off_topic")
    clock.advance(minutes=1)
    harassment_old = await _file(lifecycle, clock, "r2", reason="harassment")
    clock.advance(minutes=1)
    spam = await _file(lifecycle, clock, "r3", reason="spam", comment_id="c2")
    clock.advance(minutes=1)
    harassment_new = await _file(lifecycle, clock, "r4", reason="harassment", comment_id="c2")
    await lifecycle.review_report(
        report_id=spam.report_id, moderator_id="mod1", new_status="resolved", notes=None, now=clock.now()
    )

    queue = await lifecycle.pending_queue()

    assert [report.report_id for report in queue] == [
        harassment_old.report_id,
        harassment_new.report_id,
        off_topic.report_id,
    ]
    assert len(await lifecycle.pending_queue(limit=1)) == 1


@pytest.mark.asyncio
async def test_failed_threshold_action_is_raised_and_applied_by_the_next_report(clock) -> None:
    store = await _flaky_community()
    lifecycle = _lifecycle(store)
    for idx in range(1, 5):
        await _file(lifecycle, clock, f"r{idx}")

    store.failing = True
    with pytest.raises(DependencyUnavailable):
        await _file(lifecycle, clock, "r5")
    assert (await store.get_actor("author")).muted_until is None

    store.failing = False
    await _file(lifecycle, clock, "r6")
    await _file(lifecycle, clock, "r7")

    mutes = [action for action in store.actions if action.action_type == "mute_user"]
    assert len(mutes) == 1
    assert mutes[0].details["threshold"] == 5
    assert mutes[0].details["report_count"] == 6
    assert (await store.get_actor("author")).is_muted(clock.now())
    assert [action.action_type for action in store.actions].count("warn_user") == 1


@pytest.mark.asyncio
async def test_reconcile_applies_an_owed_threshold_exactly_once(clock) -> None:
    store = await _flaky_community()
    lifecycle = _lifecycle(store)
    for idx in range(1, 5):
        await _file(lifecycle, clock, f"r{idx}")
    store.failing = True
    with pytest.raises(DependencyUnavailable):
        await _file(lifecycle, clock, "r5")
    store.failing = False

    applied = await lifecycle.reconcile_thresholds("c1", now=clock.now())

    assert [action.action_type for action in applied] == ["mute_user"]
    assert await lifecycle.reconcile_thresholds("c1", now=clock.now()) == []
    assert len([action for action in store.actions if action.action_type == "mute_user"]) == 1
