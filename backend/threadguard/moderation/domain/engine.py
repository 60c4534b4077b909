"""Facade wiring the rate gate, evaluators, report workflow and dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from threadguard.moderation.domain.clock import Clock, SystemClock
from threadguard.moderation.domain.config import EngineConfig
from threadguard.moderation.domain.dispatcher import ActionDispatcher, Notifier
from threadguard.moderation.domain.errors import NotFoundError, RateLimitExceeded
from threadguard.moderation.domain.escalation import EscalationRouter
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import (
    SYSTEM_ACTOR,
    Actor,
    CommentState,
    Escalation,
    ModerationAction,
    RateAction,
    RateDecision,
    Report,
    ReportStatus,
    VoteOutcome,
    VoteType,
)
from threadguard.moderation.domain.reports import ReportLifecycle
from threadguard.moderation.domain.resilience import call_external
from threadguard.moderation.domain.rule_evaluator import Decision, EvaluationContext, evaluate_content
from threadguard.moderation.domain.store import ModerationStore
from threadguard.moderation.domain.vote_abuse import VoteAbuseDetector
from threadguard.moderation.domain.window_counter import CounterBackend, InMemoryCounterBackend, WindowCounterStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentOutcome:
    comment_id: str
    rate: RateDecision
    decision: Decision
    actions: tuple[ModerationAction, ...] = ()
    escalated: bool = False


class ModerationEngine:
    """Entry point for inbound comment, vote and report events."""

    def __init__(
        self,
        store: ModerationStore,
        *,
        counter_backend: CounterBackend | None = None,
        config: EngineConfig | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._config = config or EngineConfig.default()
        self.counters = WindowCounterStore(counter_backend or InMemoryCounterBackend(), self._config.rate_limits)
        self.dispatcher = ActionDispatcher(store, config=self._config, notifier=notifier)
        self.votes = VoteAbuseDetector(store, self.dispatcher, self._config.votes)
        report_locks = KeyedLocks()
        self.reports = ReportLifecycle(
            store=store,
            dispatcher=self.dispatcher,
            thresholds=self._config.reports,
            report_locks=report_locks,
        )
        self.escalations = EscalationRouter(
            store=store,
            dispatcher=self.dispatcher,
            report_locks=report_locks,
            debounce_seconds=self._config.escalation_debounce_seconds,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    def update_config(self, config: EngineConfig) -> EngineConfig:
        """Swap in a new snapshot; in-flight evaluations keep the one they captured."""

        previous = self._config
        self._config = config
        self.dispatcher.config = config
        self.votes.config = config.votes
        self.reports.thresholds = config.reports
        self.escalations.debounce_seconds = config.escalation_debounce_seconds
        logger.info(
            "moderation config updated",
            extra={"from_version": previous.version, "to_version": config.version},
        )
        return config

    async def reload_config_from_store(self) -> EngineConfig:
        keywords = await call_external("keyword_list", self.store.list_keywords)
        rules = await call_external("rule_list", self.store.list_rules)
        return self.update_config(self._config.with_updates(keywords=tuple(keywords), rules=tuple(rules)))

    # --- Rate gate ---------------------------------------------------------

    async def check_rate(self, actor_id: str, action_type: str, now: Optional[datetime] = None) -> RateDecision:
        now = now or self.clock.now()
        return await self.counters.increment(actor_id, action_type, now, limits=self._config.rate_limits)

    async def peek_rate(self, actor_id: str, action_type: str, now: Optional[datetime] = None) -> RateDecision:
        now = now or self.clock.now()
        return await self.counters.peek(actor_id, action_type, now, limits=self._config.rate_limits)

    async def _gate(self, actor_id: str, action: RateAction, now: datetime) -> RateDecision:
        decision = await self.check_rate(actor_id, action.value, now)
        if not decision.allowed:
            raise RateLimitExceeded(decision, now=now)
        return decision

    # --- Content -----------------------------------------------------------

    async def evaluate_content(
        self,
        content: str,
        actor: Actor | str,
        context: Optional[EvaluationContext] = None,
    ) -> Decision:
        config = self._config
        resolved = await self._resolve_actor(actor)
        return evaluate_content(content, resolved, context or EvaluationContext(now=self.clock.now()), config)

    async def submit_comment(
        self,
        actor_id: str,
        comment_id: str,
        content: str,
        *,
        thread_id: Optional[str] = None,
        context: Optional[EvaluationContext] = None,
        now: Optional[datetime] = None,
    ) -> ContentOutcome:
        now = now or (context.now if context else self.clock.now())
        config = self._config
        rate = await self._gate(actor_id, RateAction.COMMENT, now)
        actor = await self._resolve_actor(actor_id)
        existing = await call_external("comment_read", lambda: self.store.get_comment(comment_id))
        if existing is None:
            comment = CommentState(comment_id=comment_id, author_id=actor_id, thread_id=thread_id or comment_id)
            await call_external("comment_write", lambda: self.store.upsert_comment(comment))
        decision = evaluate_content(content, actor, context or EvaluationContext(now=now), config)
        actions: tuple[ModerationAction, ...] = ()
        if not decision.is_noop:
            dispatched = await self.dispatcher.dispatch_decision(
                decision,
                author_id=actor_id,
                comment_id=comment_id,
                now=now,
            )
            actions = tuple(dispatched)
        if decision.escalate:
            await self.dispatcher.record_audit(
                "content.escalate",
                SYSTEM_ACTOR,
                "comment",
                comment_id,
                {
                    "severity": decision.severity,
                    "matched_keywords": list(decision.matched_keywords),
                    "rule_ids": list(decision.rule_ids),
                },
                now=now,
            )
        return ContentOutcome(
            comment_id=comment_id,
            rate=rate,
            decision=decision,
            actions=actions,
            escalated=decision.escalate,
        )

    # --- Votes and reports -------------------------------------------------

    async def record_vote(
        self,
        voter_id: str,
        comment_id: str,
        vote_type: str | VoteType,
        now: Optional[datetime] = None,
        *,
        fingerprint: Optional[str] = None,
    ) -> VoteOutcome:
        now = now or self.clock.now()
        try:
            await self._gate(voter_id, RateAction.VOTE, now)
        except RateLimitExceeded:
            # Refused votes still feed the rapid-voting heuristic
            await self.votes.observe_attempt(voter_id, comment_id, now)
            raise
        return await self.votes.record_vote(voter_id, comment_id, vote_type, now, fingerprint=fingerprint)

    async def file_report(
        self,
        comment_id: str,
        reporter_id: str,
        reason: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Report:
        now = now or self.clock.now()
        await self._gate(reporter_id, RateAction.REPORT, now)
        return await self.reports.file_report(
            comment_id=comment_id,
            reporter_id=reporter_id,
            reason=reason,
            notes=notes,
            now=now,
        )

    async def review_report(
        self,
        report_id: str,
        moderator_id: str,
        new_status: str | ReportStatus,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> Report:
        return await self.reports.review_report(
            report_id=report_id,
            moderator_id=moderator_id,
            new_status=new_status,
            notes=notes,
            now=now or self.clock.now(),
            expected_version=expected_version,
        )

    async def escalate(
        self,
        report_id: str,
        from_moderator: str,
        to_moderator: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Escalation:
        return await self.escalations.escalate(
            report_id=report_id,
            from_moderator=from_moderator,
            to_moderator=to_moderator,
            reason=reason,
            now=now or self.clock.now(),
        )

    async def reconcile_thresholds(self, comment_id: str, now: Optional[datetime] = None) -> list[ModerationAction]:
        return await self.reports.reconcile_thresholds(comment_id, now=now or self.clock.now())

    async def pending_queue(self, limit: int = 50) -> list[Report]:
        return await self.reports.pending_queue(limit=limit)

    # --- Actions -----------------------------------------------------------

    async def dispatch(
        self,
        action_type: str,
        moderator_id: str,
        *,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ModerationAction:
        return await self.dispatcher.dispatch(
            action_type,
            moderator_id,
            now=now or self.clock.now(),
            target_user_id=target_user_id,
            target_comment_id=target_comment_id,
            details=details,
            reason=reason,
        )

    async def _resolve_actor(self, actor: Actor | str) -> Actor:
        if isinstance(actor, Actor):
            return actor
        found = await call_external("actor_read", lambda: self.store.get_actor(actor))
        if found is None:
            raise NotFoundError(f"actor_not_found:{actor}")
        return found
