"""Report lifecycle: filing, moderator review and report-count automation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

from threadguard.moderation.domain.config import ReportThresholds
from threadguard.moderation.domain.dispatcher import ActionDispatcher
from threadguard.moderation.domain.errors import (
    ConflictError,
    ModerationError,
    NotFoundError,
    ValidationError,
)
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import (
    SYSTEM_ACTOR,
    ModerationAction,
    Report,
    ReportReason,
    ReportStatus,
    Role,
    new_id,
)
from threadguard.moderation.domain.resilience import call_external
from threadguard.moderation.domain.store import ModerationStore
from threadguard.obs import metrics

logger = logging.getLogger(__name__)

# Escalated is entered only through the escalation router
REVIEW_TRANSITIONS: Mapping[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.REVIEWED, ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.REVIEWED: frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.ESCALATED: frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.RESOLVED: frozenset(),
    ReportStatus.DISMISSED: frozenset(),
}

QUEUE_STATUSES = (ReportStatus.PENDING, ReportStatus.ESCALATED)


@dataclass
class ReportLifecycle:
    store: ModerationStore
    dispatcher: ActionDispatcher
    thresholds: ReportThresholds = field(default_factory=ReportThresholds)
    report_locks: KeyedLocks = field(default_factory=KeyedLocks)
    comment_locks: KeyedLocks = field(default_factory=KeyedLocks)

    async def file_report(
        self,
        *,
        comment_id: str,
        reporter_id: str,
        reason: str | ReportReason,
        notes: Optional[str],
        now: datetime,
    ) -> Report:
        if not reporter_id:
            raise ValidationError("reporter_id_required")
        try:
            parsed_reason = ReportReason(reason)
        except ValueError as exc:
            raise ValidationError(f"unknown_report_reason:{reason}") from exc
        comment = await call_external("comment_read", lambda: self.store.get_comment(comment_id))
        if comment is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        if comment.author_id == reporter_id:
            raise ValidationError("cannot_report_own_comment")
        report = Report(
            report_id=new_id(),
            comment_id=comment_id,
            reporter_id=reporter_id,
            reason=parsed_reason,
            status=ReportStatus.PENDING,
            created_at=now,
            updated_at=now,
            notes=notes,
        )
        async with self.comment_locks.hold(comment_id):
            stored = await call_external("report_create", lambda: self.store.create_report(report))
            open_count = await call_external("report_count", lambda: self.store.count_open_reports(comment_id))
        metrics.MOD_REPORTS_TOTAL.labels(reason=parsed_reason.value).inc()
        metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition="filed").inc()
        await self.dispatcher.record_audit(
            "report.create",
            reporter_id,
            "comment",
            comment_id,
            {"report_id": stored.report_id, "reason": parsed_reason.value, "priority": stored.priority},
            now=now,
        )
        async with self.comment_locks.hold(comment_id):
            await self._apply_thresholds(comment.author_id, comment_id, open_count, now)
        return stored

    async def reconcile_thresholds(self, comment_id: str, *, now: datetime) -> list[ModerationAction]:
        """Apply any threshold action the current open-report count owes but never received."""

        comment = await call_external("comment_read", lambda: self.store.get_comment(comment_id))
        if comment is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        async with self.comment_locks.hold(comment_id):
            open_count = await call_external("report_count", lambda: self.store.count_open_reports(comment_id))
            return await self._apply_thresholds(comment.author_id, comment_id, open_count, now)

    async def review_report(
        self,
        *,
        report_id: str,
        moderator_id: str,
        new_status: str | ReportStatus,
        notes: Optional[str],
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> Report:
        try:
            status = ReportStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"unknown_report_status:{new_status}") from exc
        if status is ReportStatus.ESCALATED:
            raise ValidationError("escalate_via_router")
        moderator = await call_external("actor_read", lambda: self.store.get_actor(moderator_id))
        if moderator is None:
            raise NotFoundError(f"actor_not_found:{moderator_id}")
        if moderator.role.rank < Role.MODERATOR.rank:
            raise ValidationError("moderator_role_required")
        async with self.report_locks.hold(report_id):
            report = await call_external("report_read", lambda: self.store.get_report(report_id))
            if report is None:
                raise NotFoundError(f"report_not_found:{report_id}")
            if expected_version is not None and expected_version != report.version:
                raise ConflictError("report_version_conflict")
            if status not in REVIEW_TRANSITIONS[report.status]:
                raise ValidationError(f"illegal_transition:{report.status.value}->{status.value}")
            previous = report.status
            updated = report.copy(
                status=status,
                reviewed_by=moderator_id,
                reviewed_at=now,
                updated_at=now,
                notes=notes if notes is not None else report.notes,
            )
            saved = await call_external(
                "report_save",
                lambda: self.store.save_report(updated, expected_version=report.version),
            )
        metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition=f"{previous.value}->{status.value}").inc()
        await self.dispatcher.record_audit(
            "report.review",
            moderator_id,
            "report",
            report_id,
            {"from": previous.value, "to": status.value, "notes": notes or ""},
            now=now,
        )
        return saved

    async def pending_queue(self, *, limit: int = 50) -> list[Report]:
        """Open reports ordered by reason priority, oldest first within a priority."""

        reports = await call_external("report_list", lambda: self.store.list_reports(statuses=QUEUE_STATUSES))
        ordered = sorted(reports, key=lambda report: (-report.priority, report.created_at))
        return ordered[:limit]

    async def _apply_thresholds(
        self,
        author_id: str,
        comment_id: str,
        open_count: int,
        now: datetime,
    ) -> list[ModerationAction]:
        owed = [(threshold, action) for threshold, action in self.thresholds.ladder() if open_count >= threshold]
        if not owed:
            return []
        applied = await self._applied_thresholds(author_id, comment_id)
        triggered: list[ModerationAction] = []
        for threshold, action in owed:
            if (action, threshold) in applied:
                continue
            details: dict[str, object] = {
                "trigger": "report_threshold",
                "report_count": open_count,
                "threshold": threshold,
                "comment_id": comment_id,
            }
            if action == "mute_user":
                details["duration_minutes"] = self.thresholds.auto_mute_minutes
            try:
                triggered.append(
                    await self.dispatcher.dispatch(
                        action,
                        SYSTEM_ACTOR,
                        now=now,
                        target_user_id=author_id,
                        details=details,
                        reason=f"auto_{action}",
                    )
                )
            except ModerationError as exc:
                logger.exception(
                    "report threshold action failed",
                    extra={"action": action, "comment_id": comment_id, "report_count": open_count},
                )
                # Retryable failures stay owed; the next filing or reconcile picks them up
                if exc.retryable:
                    raise
                continue
            metrics.MOD_AUTO_THRESHOLD_ACTIONS_TOTAL.labels(action=action).inc()
            logger.info(
                "report threshold crossed",
                extra={"action": action, "comment_id": comment_id, "report_count": open_count},
            )
        return triggered

    async def _applied_thresholds(self, author_id: str, comment_id: str) -> set[tuple[str, object]]:
        actions = await self.dispatcher.list_actions(target_user_id=author_id)
        return {
            (action.action_type, action.details.get("threshold"))
            for action in actions
            if action.details.get("trigger") == "report_threshold" and action.details.get("comment_id") == comment_id
        }
