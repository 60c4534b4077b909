"""Durable store contract consumed by the engine plus an in-memory implementation."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from threadguard.moderation.domain.errors import (
    ConflictError,
    DuplicateReportError,
    NotFoundError,
    ValidationError,
)
from threadguard.moderation.domain.models import (
    AbuseSignal,
    Actor,
    AuditEntry,
    CommentState,
    Escalation,
    Keyword,
    ModerationAction,
    Report,
    ReportStatus,
    Rule,
)


class ModerationStore(Protocol):
    """Storage contract; uniqueness invariants are enforced here."""

    # --- Actors & comments ----------------------------------------------

    async def get_actor(self, actor_id: str) -> Actor | None:
        ...

    async def upsert_actor(self, actor: Actor) -> Actor:
        ...

    async def apply_actor_change(self, actor_id: str, changes: Mapping[str, Any]) -> Actor:
        ...

    async def get_comment(self, comment_id: str) -> CommentState | None:
        ...

    async def upsert_comment(self, comment: CommentState) -> CommentState:
        ...

    async def apply_comment_change(self, comment_id: str, changes: Mapping[str, Any]) -> CommentState:
        ...

    # --- Reports & escalations ------------------------------------------

    async def create_report(self, report: Report) -> Report:
        ...

    async def get_report(self, report_id: str) -> Report | None:
        ...

    async def save_report(self, report: Report, *, expected_version: int) -> Report:
        ...

    async def count_open_reports(self, comment_id: str) -> int:
        ...

    async def list_reports(self, *, statuses: Iterable[ReportStatus] | None = None) -> Sequence[Report]:
        ...

    async def escalate_report(self, report: Report, escalation: Escalation, *, expected_version: int) -> Report:
        """Save the escalated report, supersede earlier escalations and add this one atomically."""
        ...

    async def list_escalations(self, report_id: str) -> Sequence[Escalation]:
        ...

    # --- Audit ----------------------------------------------------------

    async def append_action(self, action: ModerationAction) -> ModerationAction:
        ...

    async def find_recent_action(
        self,
        action_type: str,
        target_user_id: Optional[str],
        target_comment_id: Optional[str],
        *,
        since: datetime,
    ) -> ModerationAction | None:
        ...

    async def list_actions(
        self,
        *,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
    ) -> Sequence[ModerationAction]:
        ...

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        ...

    async def list_audit(self, *, after: datetime | None, limit: int) -> Sequence[AuditEntry]:
        ...

    async def append_signal(self, signal: AbuseSignal) -> AbuseSignal:
        ...

    async def list_signals(self, *, actor_id: Optional[str] = None) -> Sequence[AbuseSignal]:
        ...

    # --- Rules & keywords -----------------------------------------------

    async def list_keywords(self) -> Sequence[Keyword]:
        ...

    async def upsert_keyword(self, keyword: Keyword, *, replace_existing: bool = False) -> Keyword:
        ...

    async def list_rules(self) -> Sequence[Rule]:
        ...

    async def upsert_rule(self, rule: Rule) -> Rule:
        ...


class InMemoryModerationStore(ModerationStore):
    """Lightweight in-memory store for local development and tests.

    Every method completes without awaiting, so each call is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self.actors: dict[str, Actor] = {}
        self.comments: dict[str, CommentState] = {}
        self.reports: dict[str, Report] = {}
        self._report_keys: dict[tuple[str, str], str] = {}
        self.escalations: dict[str, list[Escalation]] = {}
        self.actions: list[ModerationAction] = []
        self.audit_log: list[AuditEntry] = []
        self.signals: list[AbuseSignal] = []
        self.keywords: dict[str, Keyword] = {}
        self.rules: dict[str, Rule] = {}

    async def get_actor(self, actor_id: str) -> Actor | None:
        actor = self.actors.get(actor_id)
        return replace(actor) if actor else None

    async def upsert_actor(self, actor: Actor) -> Actor:
        self.actors[actor.actor_id] = replace(actor)
        return replace(actor)

    async def apply_actor_change(self, actor_id: str, changes: Mapping[str, Any]) -> Actor:
        actor = self.actors.get(actor_id)
        if actor is None:
            raise NotFoundError(f"actor_not_found:{actor_id}")
        updated = replace(actor, **dict(changes))
        self.actors[actor_id] = updated
        return replace(updated)

    async def get_comment(self, comment_id: str) -> CommentState | None:
        comment = self.comments.get(comment_id)
        return replace(comment, tags=set(comment.tags)) if comment else None

    async def upsert_comment(self, comment: CommentState) -> CommentState:
        self.comments[comment.comment_id] = replace(comment, tags=set(comment.tags))
        return comment

    async def apply_comment_change(self, comment_id: str, changes: Mapping[str, Any]) -> CommentState:
        comment = self.comments.get(comment_id)
        if comment is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        updated = replace(comment, **dict(changes))
        self.comments[comment_id] = updated
        return replace(updated, tags=set(updated.tags))

    async def create_report(self, report: Report) -> Report:
        key = (report.comment_id, report.reporter_id)
        if key in self._report_keys:
            raise DuplicateReportError("duplicate_report")
        self._report_keys[key] = report.report_id
        self.reports[report.report_id] = report.copy()
        return report.copy()

    async def get_report(self, report_id: str) -> Report | None:
        report = self.reports.get(report_id)
        return report.copy() if report else None

    async def save_report(self, report: Report, *, expected_version: int) -> Report:
        current = self.reports.get(report.report_id)
        if current is None:
            raise NotFoundError(f"report_not_found:{report.report_id}")
        if current.version != expected_version:
            raise ConflictError("report_version_conflict")
        stored = report.copy(version=expected_version + 1)
        self.reports[report.report_id] = stored
        return stored.copy()

    async def count_open_reports(self, comment_id: str) -> int:
        return sum(
            1
            for report in self.reports.values()
            if report.comment_id == comment_id and report.status is not ReportStatus.DISMISSED
        )

    async def list_reports(self, *, statuses: Iterable[ReportStatus] | None = None) -> Sequence[Report]:
        wanted = set(statuses) if statuses is not None else None
        return [
            report.copy()
            for report in self.reports.values()
            if wanted is None or report.status in wanted
        ]

    async def escalate_report(self, report: Report, escalation: Escalation, *, expected_version: int) -> Report:
        current = self.reports.get(report.report_id)
        if current is None:
            raise NotFoundError(f"report_not_found:{report.report_id}")
        if current.version != expected_version:
            raise ConflictError("report_version_conflict")
        stored = report.copy(version=expected_version + 1)
        self.reports[report.report_id] = stored
        history = self.escalations.setdefault(escalation.report_id, [])
        history[:] = [replace(item, superseded=True) for item in history]
        history.append(escalation)
        return stored.copy()

    async def list_escalations(self, report_id: str) -> Sequence[Escalation]:
        return list(self.escalations.get(report_id, []))

    async def append_action(self, action: ModerationAction) -> ModerationAction:
        self.actions.append(action)
        return action

    async def find_recent_action(
        self,
        action_type: str,
        target_user_id: Optional[str],
        target_comment_id: Optional[str],
        *,
        since: datetime,
    ) -> ModerationAction | None:
        for action in reversed(self.actions):
            if action.created_at < since:
                break
            if (
                action.action_type == action_type
                and action.target_user_id == target_user_id
                and action.target_comment_id == target_comment_id
            ):
                return action
        return None

    async def list_actions(
        self,
        *,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
    ) -> Sequence[ModerationAction]:
        return [
            action
            for action in self.actions
            if (target_user_id is None or action.target_user_id == target_user_id)
            and (target_comment_id is None or action.target_comment_id == target_comment_id)
        ]

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        self.audit_log.append(entry)
        return entry

    async def list_audit(self, *, after: datetime | None, limit: int) -> Sequence[AuditEntry]:
        entries = self.audit_log
        if after:
            entries = [entry for entry in entries if entry.created_at > after]
        return entries[:limit]

    async def append_signal(self, signal: AbuseSignal) -> AbuseSignal:
        self.signals.append(signal)
        return signal

    async def list_signals(self, *, actor_id: Optional[str] = None) -> Sequence[AbuseSignal]:
        return [signal for signal in self.signals if actor_id is None or signal.actor_id == actor_id]

    async def list_keywords(self) -> Sequence[Keyword]:
        return list(self.keywords.values())

    async def upsert_keyword(self, keyword: Keyword, *, replace_existing: bool = False) -> Keyword:
        if keyword.normalized in self.keywords and not replace_existing:
            raise ValidationError(f"duplicate_keyword:{keyword.phrase}")
        self.keywords[keyword.normalized] = keyword
        return keyword

    async def list_rules(self) -> Sequence[Rule]:
        return list(self.rules.values())

    async def upsert_rule(self, rule: Rule) -> Rule:
        self.rules[rule.rule_id] = rule
        return rule
