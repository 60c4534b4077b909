"""Idempotent application of moderation actions plus the append-only audit log."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol, Sequence

from threadguard.moderation.domain.config import EngineConfig
from threadguard.moderation.domain.errors import (
    DependencyUnavailable,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from threadguard.moderation.domain.locks import KeyedLocks
from threadguard.moderation.domain.models import (
    SYSTEM_ACTOR,
    ActionType,
    AuditEntry,
    ModerationAction,
    Role,
    new_id,
)
from threadguard.moderation.domain.resilience import call_external
from threadguard.moderation.domain.rule_evaluator import Decision
from threadguard.moderation.domain.store import ModerationStore
from threadguard.obs import metrics

logger = logging.getLogger(__name__)

DECISION_ACTIONS: Mapping[str, ActionType] = {
    "delete": ActionType.DELETE_COMMENT,
    "hide": ActionType.HIDE_COMMENT,
    "flag": ActionType.FLAG_COMMENT,
    "warn": ActionType.WARN_USER,
}


class Notifier(Protocol):
    async def notify(self, action: ModerationAction) -> None:
        ...


class ActionDispatcher:
    """Applies each logical moderation intent once and records it."""

    def __init__(
        self,
        store: ModerationStore,
        *,
        config: EngineConfig | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig.default()
        self.notifier = notifier
        self._intents = KeyedLocks()
        self._pending_actions: list[ModerationAction] = []
        self._pending_audit: list[AuditEntry] = []
        self._notify_tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_audits(self) -> int:
        return len(self._pending_actions) + len(self._pending_audit)

    async def dispatch(
        self,
        action_type: str | ActionType,
        moderator_id: str,
        *,
        now: datetime,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> ModerationAction:
        kind = _parse_action(action_type)
        if kind.targets_user and not target_user_id:
            raise ValidationError(f"target_user_required:{kind.value}")
        if kind.targets_comment and not target_comment_id:
            raise ValidationError(f"target_comment_required:{kind.value}")
        intent = (kind.value, target_user_id, target_comment_id)
        async with self._intents.hold(intent):
            since = now - timedelta(seconds=self.config.dispatch_dedup_seconds)
            existing = self._pending_match(kind.value, target_user_id, target_comment_id, since)
            if existing is None:
                existing = await call_external(
                    "audit_lookup",
                    lambda: self.store.find_recent_action(
                        kind.value, target_user_id, target_comment_id, since=since
                    ),
                )
            if existing is not None:
                metrics.MOD_ACTIONS_DISPATCHED_TOTAL.labels(action=kind.value, result="deduplicated").inc()
                logger.info(
                    "duplicate moderation intent collapsed",
                    extra={"action": kind.value, "action_id": existing.action_id},
                )
                return existing
            payload = dict(details or {})
            try:
                applied = await self._apply(kind, target_user_id, target_comment_id, payload, now)
            except Exception:
                metrics.MOD_ACTIONS_DISPATCHED_TOTAL.labels(action=kind.value, result="failed").inc()
                raise
            payload.update(applied)
            record = ModerationAction(
                action_id=new_id(),
                action_type=kind.value,
                moderator_id=moderator_id,
                target_user_id=target_user_id,
                target_comment_id=target_comment_id,
                details=payload,
                reason=reason,
                created_at=now,
            )
            record = await self._write_action(record)
        metrics.MOD_ACTIONS_DISPATCHED_TOTAL.labels(action=kind.value, result="applied").inc()
        self._notify(record)
        return record

    async def dispatch_decision(
        self,
        decision: Decision,
        *,
        author_id: str,
        comment_id: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> list[ModerationAction]:
        """Translate an evaluator decision into system-dispatched actions."""

        details = {
            "severity": decision.severity,
            "matched_keywords": list(decision.matched_keywords),
            "rule_ids": list(decision.rule_ids),
            "config_version": decision.config_version,
        }
        kinds: list[ActionType] = []
        for name in decision.actions:
            if name == "escalate":
                continue
            if name == "hide" and decision.delete:
                continue
            kind = DECISION_ACTIONS.get(name)
            if kind is None:
                try:
                    kind = ActionType(name)
                except ValueError:
                    logger.warning("ignoring unknown decision action", extra={"decision_action": name})
                    continue
            if kind not in kinds:
                kinds.append(kind)
        results: list[ModerationAction] = []
        for kind in kinds:
            results.append(
                await self.dispatch(
                    kind,
                    SYSTEM_ACTOR,
                    now=now,
                    target_user_id=author_id if kind.targets_user else None,
                    target_comment_id=comment_id if kind.targets_comment else None,
                    details=details,
                    reason=reason or "automated_content_decision",
                )
            )
        return results

    async def record_audit(
        self,
        event: str,
        actor_id: str,
        target_type: str,
        target_id: str,
        meta: Mapping[str, Any],
        *,
        now: datetime,
    ) -> AuditEntry:
        entry = AuditEntry(
            entry_id=new_id(),
            event=event,
            actor_id=actor_id,
            target_type=target_type,
            target_id=target_id,
            meta=dict(meta),
            created_at=now,
        )
        start = time.perf_counter()
        try:
            await call_external(
                "audit_write",
                lambda: self.store.append_audit(entry),
                attempts=self.config.audit_retry_attempts,
            )
        except DependencyUnavailable:
            self._pending_audit.append(entry)
            metrics.MOD_AUDIT_FAILURES_TOTAL.labels(kind="entry").inc()
            logger.error("audit entry buffered after write failure", extra={"event": event, "entry_id": entry.entry_id})
        metrics.MOD_AUDIT_LATENCY_SECONDS.observe(time.perf_counter() - start)
        return entry

    async def flush_pending_audits(self) -> int:
        """Retry buffered audit writes; returns how many were persisted."""

        written = 0
        actions, self._pending_actions = self._pending_actions, []
        for action in actions:
            record = await self._write_action(action)
            if not record.audit_pending:
                written += 1
        entries, self._pending_audit = self._pending_audit, []
        for entry in entries:
            try:
                await call_external("audit_write", lambda entry=entry: self.store.append_audit(entry))
                written += 1
            except DependencyUnavailable:
                self._pending_audit.append(entry)
        return written

    async def list_actions(
        self,
        *,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
    ) -> Sequence[ModerationAction]:
        """Persisted actions followed by applied ones still waiting on their audit write."""

        stored = await call_external(
            "audit_read",
            lambda: self.store.list_actions(target_user_id=target_user_id, target_comment_id=target_comment_id),
        )
        pending = [
            action
            for action in self._pending_actions
            if (target_user_id is None or action.target_user_id == target_user_id)
            and (target_comment_id is None or action.target_comment_id == target_comment_id)
        ]
        return [*stored, *pending]

    async def _write_action(self, record: ModerationAction) -> ModerationAction:
        stored = replace(record, audit_pending=False)
        start = time.perf_counter()
        try:
            await call_external(
                "audit_write",
                lambda: self.store.append_action(stored),
                attempts=self.config.audit_retry_attempts,
            )
        except DependencyUnavailable:
            # The state change already holds; keep the record for a later flush
            pending = replace(record, audit_pending=True)
            self._pending_actions.append(pending)
            metrics.MOD_AUDIT_FAILURES_TOTAL.labels(kind="action").inc()
            logger.error(
                "audit write failed after applied action",
                extra={"action": record.action_type, "action_id": record.action_id},
            )
            return pending
        finally:
            metrics.MOD_AUDIT_LATENCY_SECONDS.observe(time.perf_counter() - start)
        return stored

    def _pending_match(
        self,
        action_type: str,
        target_user_id: Optional[str],
        target_comment_id: Optional[str],
        since: datetime,
    ) -> ModerationAction | None:
        for action in reversed(self._pending_actions):
            if (
                action.created_at >= since
                and action.action_type == action_type
                and action.target_user_id == target_user_id
                and action.target_comment_id == target_comment_id
            ):
                return action
        return None

    async def _apply(
        self,
        kind: ActionType,
        target_user_id: Optional[str],
        target_comment_id: Optional[str],
        details: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        if kind.targets_user:
            assert target_user_id is not None
            changes = await self._actor_changes(kind, target_user_id, details, now)
            await call_external("actor_update", lambda: self.store.apply_actor_change(target_user_id, changes))
        else:
            assert target_comment_id is not None
            changes = await self._comment_changes(kind, target_comment_id, details)
            await call_external("comment_update", lambda: self.store.apply_comment_change(target_comment_id, changes))
        return {key: _serialise(value) for key, value in changes.items()}

    async def _actor_changes(
        self,
        kind: ActionType,
        actor_id: str,
        details: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        actor = await call_external("actor_read", lambda: self.store.get_actor(actor_id))
        if actor is None:
            raise NotFoundError(f"actor_not_found:{actor_id}")
        if kind is ActionType.BAN_USER:
            return {"banned": True}
        if kind is ActionType.UNBAN_USER:
            return {"banned": False}
        if kind is ActionType.SHADOW_BAN_USER:
            return {"shadow_banned": True}
        if kind is ActionType.UNSHADOW_BAN_USER:
            return {"shadow_banned": False}
        if kind is ActionType.WARN_USER:
            return {"warnings": actor.warnings + 1}
        if kind is ActionType.MUTE_USER:
            minutes = int(details.get("duration_minutes", self.config.default_mute_minutes))
            if minutes <= 0:
                raise ValidationError("mute_duration_must_be_positive")
            until = now + timedelta(minutes=minutes)
            if actor.muted_until and actor.muted_until > until:
                until = actor.muted_until
            return {"muted_until": until}
        direction = 1 if kind is ActionType.PROMOTE_USER else -1
        if "role" in details:
            try:
                target = Role(str(details["role"]))
            except ValueError as exc:
                raise ValidationError(f"unknown_role:{details['role']}") from exc
            if (target.rank - actor.role.rank) * direction <= 0:
                raise InvariantViolation(f"{kind.value}_wrong_direction:{actor.role.value}->{target.value}")
        else:
            target = actor.role.step(direction)
            if target is None:
                raise InvariantViolation(f"{kind.value}_out_of_range:{actor.role.value}")
        return {"role": target}

    async def _comment_changes(
        self,
        kind: ActionType,
        comment_id: str,
        details: Mapping[str, Any],
    ) -> dict[str, Any]:
        comment = await call_external("comment_read", lambda: self.store.get_comment(comment_id))
        if comment is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        if kind in (ActionType.TAG_COMMENT, ActionType.UNTAG_COMMENT):
            tag = str(details.get("tag") or "").strip()
            if not tag:
                raise ValidationError("tag_required")
            tags = set(comment.tags)
            if kind is ActionType.TAG_COMMENT:
                tags.add(tag)
            else:
                tags.discard(tag)
            return {"tags": tags}
        return dict(_COMMENT_CHANGES[kind])

    def _notify(self, record: ModerationAction) -> None:
        if self.notifier is None:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(record))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _deliver(self, record: ModerationAction) -> None:
        assert self.notifier is not None
        try:
            await self.notifier.notify(record)
        except Exception:  # noqa: BLE001 - notifier is fire-and-forget
            logger.exception("notifier failed", extra={"action_id": record.action_id})


_COMMENT_CHANGES: Mapping[ActionType, Mapping[str, Any]] = {
    ActionType.DELETE_COMMENT: {"deleted": True},
    ActionType.RESTORE_COMMENT: {"deleted": False, "hidden": False},
    ActionType.LOCK_THREAD: {"locked": True},
    ActionType.UNLOCK_THREAD: {"locked": False},
    ActionType.PIN_COMMENT: {"pinned": True},
    ActionType.UNPIN_COMMENT: {"pinned": False},
    ActionType.HIDE_COMMENT: {"hidden": True},
    ActionType.FLAG_COMMENT: {"flagged": True},
}


def _parse_action(action_type: str | ActionType) -> ActionType:
    if isinstance(action_type, ActionType):
        return action_type
    try:
        return ActionType(str(action_type))
    except ValueError as exc:
        raise ValidationError(f"unknown_action_type:{action_type}") from exc


def _serialise(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Role):
        return value.value
    if isinstance(value, set):
        return sorted(value)
    return value
