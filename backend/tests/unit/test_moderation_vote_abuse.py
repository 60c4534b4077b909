"""Unit tests for vote abuse heuristics."""

from __future__ import annotations

from datetime import timedelta

import pytest

from threadguard.moderation.domain.config import VoteAbuseConfig
from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import NotFoundError, SelfVoteError, ValidationError
from threadguard.moderation.domain.models import SignalType
from threadguard.moderation.domain.vote_abuse import VoteAbuseDetector


def _detector(store, **overrides) -> VoteAbuseDetector:
    return VoteAbuseDetector(store, ActionDispatcher(store), VoteAbuseConfig(**overrides))


@pytest.mark.asyncio
async def test_self_vote_is_rejected_and_recorded(community, clock) -> None:
    detector = _detector(community)

    with pytest.raises(SelfVoteError):
        await detector.record_vote("author", "c1", "up", clock.now())

    assert [signal.signal_type for signal in community.signals] == [SignalType.SELF_VOTE_MANIPULATION]
    assert community.signals[0].severity == 1


@pytest.mark.asyncio
async def test_unknown_vote_type_and_missing_comment(community, clock) -> None:
    detector = _detector(community)
    with pytest.raises(ValidationError):
        await detector.record_vote("user1", "c1", "sideways", clock.now())
    with pytest.raises(NotFoundError):
        await detector.record_vote("user1", "missing", "up", clock.now())


@pytest.mark.asyncio
async def test_rapid_voting_emits_signal_then_restricts(community, clock) -> None:
    detector = _detector(community, rapid_vote_threshold=3)

    outcomes = []
    for _ in range(9):
        outcomes.append(await detector.record_vote("user1", "c1", "up", clock.now()))
        clock.advance(seconds=10)

    assert all(outcome.accepted for outcome in outcomes)
    assert [len(outcome.signals) for outcome in outcomes[:3]] == [0, 0, 0]
    first_signal = outcomes[3].signals[0]
    assert first_signal.signal_type is SignalType.RAPID_VOTING
    assert first_signal.severity == 1
    assert outcomes[3].dispatched == ()

    final = outcomes[-1]
    assert final.signals[0].severity == 3
    assert [action.action_type for action in final.dispatched] == ["mute_user"]
    action = final.dispatched[0]
    assert action.target_user_id == "user1"
    assert action.details["scope"] == "vote"
    actor = await community.get_actor("user1")
    assert actor.muted_until == action.created_at + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_votes_outside_the_window_are_forgotten(community, clock) -> None:
    detector = _detector(community, rapid_vote_threshold=2, rapid_vote_window_seconds=60)
    for _ in range(5):
        outcome = await detector.record_vote("user1", "c1", "down", clock.now())
        clock.advance(seconds=61)
    assert outcome.signals == ()


@pytest.mark.asyncio
async def test_brigading_is_off_unless_configured(community, clock) -> None:
    detector = _detector(community)
    for idx in range(1, 9):
        outcome = await detector.record_vote(f"r{idx}", "c1", "down", clock.now(), fingerprint="fp-1")
        assert outcome.signals == ()


@pytest.mark.asyncio
async def test_brigading_detected_for_shared_fingerprint(community, clock) -> None:
    detector = _detector(community, brigade_min_voters=3)

    outcomes = []
    for idx in range(1, 5):
        outcomes.append(await detector.record_vote(f"r{idx}", "c1", "down", clock.now(), fingerprint="fp-1"))
        clock.advance(seconds=5)
    other = await detector.record_vote("r5", "c1", "down", clock.now(), fingerprint="fp-2")

    assert all(outcome.signals == () for outcome in outcomes[:3])
    brigade = outcomes[3].signals[0]
    assert brigade.signal_type is SignalType.BRIGADING
    assert brigade.severity == 2
    assert brigade.details["distinct_voters"] == 4
    assert other.signals == ()


@pytest.mark.asyncio
async def test_prune_drops_idle_histories(community, clock) -> None:
    detector = _detector(community, brigade_min_voters=3)
    await detector.record_vote("user1", "c1", "up", clock.now(), fingerprint="fp")

    assert detector.prune(clock.now()) == 0
    assert detector.prune(clock.now() + timedelta(hours=2)) == 2
