"""Rolling-window heuristics over vote streams."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from threadguard.moderation.domain.config import VoteAbuseConfig
from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import NotFoundError, SelfVoteError, ValidationError
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import (
    SYSTEM_ACTOR,
    AbuseSignal,
    ActionType,
    ModerationAction,
    SignalType,
    VoteOutcome,
    VoteType,
    new_id,
)
from threadguard.moderation.domain.resilience import call_external
from threadguard.moderation.domain.store import ModerationStore
from threadguard.obs import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _CommentVote:
    at: datetime
    voter_id: str
    fingerprint: str


class VoteAbuseDetector:
    """Detects rapid voting and brigading; rejects self-votes outright."""

    def __init__(
        self,
        store: ModerationStore,
        dispatcher: ActionDispatcher,
        config: VoteAbuseConfig | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or VoteAbuseConfig()
        self._locks = KeyedLocks()
        self._voter_history: dict[str, deque[datetime]] = {}
        self._comment_history: dict[str, deque[_CommentVote]] = {}

    async def record_vote(
        self,
        voter_id: str,
        comment_id: str,
        vote_type: str | VoteType,
        at: datetime,
        *,
        fingerprint: Optional[str] = None,
    ) -> VoteOutcome:
        try:
            VoteType(vote_type)
        except ValueError as exc:
            raise ValidationError(f"unknown_vote_type:{vote_type}") from exc
        comment = await call_external("comment_read", lambda: self.store.get_comment(comment_id))
        if comment is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        if comment.author_id == voter_id:
            await self._persist(
                AbuseSignal(
                    signal_id=new_id(),
                    signal_type=SignalType.SELF_VOTE_MANIPULATION,
                    actor_id=voter_id,
                    comment_id=comment_id,
                    severity=1,
                    detected_at=at,
                )
            )
            metrics.MOD_VOTES_REJECTED_TOTAL.labels(reason="self_vote").inc()
            raise SelfVoteError("self_vote")

        signals: list[AbuseSignal] = []
        rapid = await self._observe_rapid(voter_id, comment_id, at)
        if rapid is not None:
            signals.append(rapid)
        if fingerprint and self.config.brigade_min_voters:
            brigade = await self._observe_brigade(voter_id, comment_id, fingerprint, at)
            if brigade is not None:
                signals.append(brigade)

        dispatched = await self._act_on(signals, at)
        return VoteOutcome(accepted=True, signals=tuple(signals), dispatched=tuple(dispatched))

    async def observe_attempt(self, voter_id: str, comment_id: str, at: datetime) -> VoteOutcome:
        """Count a vote refused before recording toward rapid voting."""

        rapid = await self._observe_rapid(voter_id, comment_id, at)
        signals = [rapid] if rapid is not None else []
        dispatched = await self._act_on(signals, at)
        return VoteOutcome(accepted=False, signals=tuple(signals), dispatched=tuple(dispatched))

    async def _act_on(self, signals: list[AbuseSignal], at: datetime) -> list[ModerationAction]:
        dispatched: list[ModerationAction] = []
        for signal in signals:
            await self._persist(signal)
            if signal.severity >= self.config.action_severity_threshold:
                dispatched.append(await self._restrict(signal, at))
        return dispatched

    async def _observe_rapid(self, voter_id: str, comment_id: str, at: datetime) -> AbuseSignal | None:
        threshold = self.config.rapid_vote_threshold
        horizon = at - timedelta(seconds=self.config.rapid_vote_window_seconds)
        async with self._locks.hold(("voter", voter_id)):
            history = self._voter_history.setdefault(voter_id, deque())
            while history and history[0] <= horizon:
                history.popleft()
            history.append(at)
            count = len(history)
        if count <= threshold:
            return None
        overage = count - threshold
        return AbuseSignal(
            signal_id=new_id(),
            signal_type=SignalType.RAPID_VOTING,
            actor_id=voter_id,
            comment_id=comment_id,
            severity=min(5, 1 + overage // threshold),
            detected_at=at,
            details={"votes_in_window": count, "threshold": threshold},
        )

    async def _observe_brigade(
        self,
        voter_id: str,
        comment_id: str,
        fingerprint: str,
        at: datetime,
    ) -> AbuseSignal | None:
        minimum = self.config.brigade_min_voters
        assert minimum
        horizon = at - timedelta(seconds=self.config.brigade_window_seconds)
        async with self._locks.hold(("comment", comment_id)):
            history = self._comment_history.setdefault(comment_id, deque())
            while history and history[0].at <= horizon:
                history.popleft()
            history.append(_CommentVote(at=at, voter_id=voter_id, fingerprint=fingerprint))
            voters = {entry.voter_id for entry in history if entry.fingerprint == fingerprint}
        if len(voters) <= minimum:
            return None
        extra = len(voters) - minimum
        return AbuseSignal(
            signal_id=new_id(),
            signal_type=SignalType.BRIGADING,
            actor_id=voter_id,
            comment_id=comment_id,
            severity=min(5, 2 + extra // minimum),
            detected_at=at,
            details={"distinct_voters": len(voters), "min_voters": minimum},
        )

    async def _persist(self, signal: AbuseSignal) -> None:
        await call_external("signal_write", lambda: self.store.append_signal(signal))
        metrics.MOD_ABUSE_SIGNALS_TOTAL.labels(signal_type=signal.signal_type.value).inc()
        logger.info(
            "abuse signal recorded",
            extra={
                "signal_type": signal.signal_type.value,
                "actor_id": signal.actor_id,
                "comment_id": signal.comment_id,
                "severity": signal.severity,
            },
        )

    async def _restrict(self, signal: AbuseSignal, at: datetime) -> ModerationAction:
        return await self.dispatcher.dispatch(
            ActionType.MUTE_USER,
            SYSTEM_ACTOR,
            now=at,
            target_user_id=signal.actor_id,
            details={
                "scope": "vote",
                "duration_minutes": self.config.vote_restriction_minutes,
                "signal_type": signal.signal_type.value,
                "signal_id": signal.signal_id,
                "severity": signal.severity,
            },
            reason=f"vote_abuse:{signal.signal_type.value}",
        )

    def prune(self, now: datetime) -> int:
        """Forget rolling histories that fell entirely out of their windows."""

        removed = 0
        voter_horizon = now - timedelta(seconds=self.config.rapid_vote_window_seconds)
        for voter_id in [key for key, items in self._voter_history.items() if not items or items[-1] <= voter_horizon]:
            del self._voter_history[voter_id]
            removed += 1
        comment_horizon = now - timedelta(seconds=self.config.brigade_window_seconds)
        for comment_id in [
            key for key, items in self._comment_history.items() if not items or items[-1].at <= comment_horizon
        ]:
            del self._comment_history[comment_id]
            removed += 1
        return removed
