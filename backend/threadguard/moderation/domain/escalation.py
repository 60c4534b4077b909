"""Escalation routing between moderation levels."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import InvariantViolation, NotFoundError, ValidationError
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import Actor, Escalation, ReportStatus, Role, new_id
from threadguard.moderation.domain.resilience import call_external
from threadguard.moderation.domain.store import ModerationStore
from threadguard.obs import metrics

logger = logging.getLogger(__name__)


@dataclass
class EscalationRouter:
    store: ModerationStore
    dispatcher: ActionDispatcher
    report_locks: KeyedLocks = field(default_factory=KeyedLocks)
    debounce_seconds: int = 30

    async def escalate(
        self,
        *,
        report_id: str,
        from_moderator: str,
        to_moderator: str,
        reason: str,
        now: datetime,
    ) -> Escalation:
        if not reason or not reason.strip():
            raise ValidationError("escalation_reason_required")
        source = await self._actor(from_moderator)
        target = await self._actor(to_moderator)
        if source.role.rank < Role.MODERATOR.rank:
            raise ValidationError("moderator_role_required")
        if target.role.rank < source.role.rank:
            logger.error(
                "downward escalation rejected",
                extra={
                    "report_id": report_id,
                    "from_role": source.role.value,
                    "to_role": target.role.value,
                },
            )
            raise InvariantViolation(f"escalation_downward:{source.role.value}->{target.role.value}")
        if target.actor_id == source.actor_id:
            raise InvariantViolation("escalation_to_self")

        async with self.report_locks.hold(report_id):
            report = await call_external("report_read", lambda: self.store.get_report(report_id))
            if report is None:
                raise NotFoundError(f"report_not_found:{report_id}")
            history = await call_external("escalation_list", lambda: self.store.list_escalations(report_id))
            duplicate = self._debounced(history, from_moderator, to_moderator, reason, now)
            if duplicate is not None:
                logger.info("duplicate escalation collapsed", extra={"report_id": report_id})
                return duplicate
            escalation = Escalation(
                escalation_id=new_id(),
                report_id=report_id,
                from_moderator=from_moderator,
                to_moderator=to_moderator,
                reason=reason,
                created_at=now,
            )
            previous = report.status
            updated = report.copy(status=ReportStatus.ESCALATED, assigned_to=to_moderator, updated_at=now)
            await call_external(
                "escalation_write",
                lambda: self.store.escalate_report(updated, escalation, expected_version=report.version),
            )
        metrics.MOD_ESCALATIONS_TOTAL.labels(to_role=target.role.value).inc()
        await self.dispatcher.record_audit(
            "report.escalate",
            from_moderator,
            "report",
            report_id,
            {
                "escalation_id": escalation.escalation_id,
                "to": to_moderator,
                "from_status": previous.value,
                "reason": reason,
            },
            now=now,
        )
        return escalation

    async def history(self, report_id: str) -> list[Escalation]:
        items = await call_external("escalation_list", lambda: self.store.list_escalations(report_id))
        return sorted(items, key=lambda item: item.created_at)

    async def current(self, report_id: str) -> Optional[Escalation]:
        items = await self.history(report_id)
        return items[-1] if items else None

    def _debounced(
        self,
        history: list[Escalation] | tuple[Escalation, ...],
        from_moderator: str,
        to_moderator: str,
        reason: str,
        now: datetime,
    ) -> Optional[Escalation]:
        horizon = now - timedelta(seconds=self.debounce_seconds)
        for item in reversed(list(history)):
            if item.created_at < horizon:
                continue
            if (
                not item.superseded
                and item.from_moderator == from_moderator
                and item.to_moderator == to_moderator
                and item.reason == reason
            ):
                return item
        return None

    async def _actor(self, actor_id: str) -> Actor:
        actor = await call_external("actor_read", lambda: self.store.get_actor(actor_id))
        if actor is None:
            raise NotFoundError(f"actor_not_found:{actor_id}")
        return actor
