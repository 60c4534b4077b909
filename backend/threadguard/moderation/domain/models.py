"""Data model shared by the moderation engine components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional

import ulid

SYSTEM_ACTOR = "system"


def new_id() -> str:
    return ulid.new().str


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def step(self, delta: int) -> "Role | None":
        idx = self.rank + delta
        if idx < 0 or idx >= len(_ROLE_ORDER):
            return None
        return _ROLE_ORDER[idx]


_ROLE_ORDER = (Role.USER, Role.MODERATOR, Role.ADMIN, Role.SUPER_ADMIN)


class RateAction(str, Enum):
    COMMENT = "comment"
    VOTE = "vote"
    REPORT = "report"
    EDIT = "edit"


class KeywordAction(str, Enum):
    FLAG = "flag"
    HIDE = "hide"
    DELETE = "delete"
    WARN = "warn"


class ReportReason(str, Enum):
    SPAM = "spam"
    OFFENSIVE = "offensive"
    HARASSMENT = "harassment"
    SPOILER = "spoiler"
    NSFW = "nsfw"
    OFF_TOPIC = "off_topic"
    OTHER = "other"

    @property
    def priority(self) -> int:
        return _REASON_PRIORITY[self]


_REASON_PRIORITY = {
    ReportReason.SPAM: 3,
    ReportReason.OFFENSIVE: 4,
    ReportReason.HARASSMENT: 5,
    ReportReason.SPOILER: 2,
    ReportReason.NSFW: 2,
    ReportReason.OFF_TOPIC: 1,
    ReportReason.OTHER: 1,
}


class ReportStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    ESCALATED = "escalated"


class ActionType(str, Enum):
    DELETE_COMMENT = "delete_comment"
    RESTORE_COMMENT = "restore_comment"
    LOCK_THREAD = "lock_thread"
    UNLOCK_THREAD = "unlock_thread"
    PIN_COMMENT = "pin_comment"
    UNPIN_COMMENT = "unpin_comment"
    TAG_COMMENT = "tag_comment"
    UNTAG_COMMENT = "untag_comment"
    WARN_USER = "warn_user"
    MUTE_USER = "mute_user"
    BAN_USER = "ban_user"
    SHADOW_BAN_USER = "shadow_ban_user"
    UNBAN_USER = "unban_user"
    UNSHADOW_BAN_USER = "unshadow_ban_user"
    PROMOTE_USER = "promote_user"
    DEMOTE_USER = "demote_user"
    # Automated content outcomes recorded through the same audit log
    HIDE_COMMENT = "hide_comment"
    FLAG_COMMENT = "flag_comment"

    @property
    def targets_user(self) -> bool:
        return self in USER_ACTIONS

    @property
    def targets_comment(self) -> bool:
        return self in COMMENT_ACTIONS


USER_ACTIONS = frozenset(
    {
        ActionType.WARN_USER,
        ActionType.MUTE_USER,
        ActionType.BAN_USER,
        ActionType.SHADOW_BAN_USER,
        ActionType.UNBAN_USER,
        ActionType.UNSHADOW_BAN_USER,
        ActionType.PROMOTE_USER,
        ActionType.DEMOTE_USER,
    }
)

COMMENT_ACTIONS = frozenset(set(ActionType) - USER_ACTIONS)


class SignalType(str, Enum):
    RAPID_VOTING = "rapid_voting"
    BRIGADING = "brigading"
    SELF_VOTE_MANIPULATION = "self_vote_manipulation"


class VoteType(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass
class Actor:
    actor_id: str
    role: Role = Role.USER
    banned: bool = False
    shadow_banned: bool = False
    muted_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    warnings: int = 0

    def is_muted(self, now: datetime) -> bool:
        return self.muted_until is not None and self.muted_until > now

    def account_age(self, now: datetime) -> timedelta:
        if self.created_at is None:
            return timedelta(0)
        return max(timedelta(0), now - self.created_at)


@dataclass
class CommentState:
    """Moderation-relevant state of a comment; content lives elsewhere."""

    comment_id: str
    author_id: str
    thread_id: Optional[str] = None
    deleted: bool = False
    hidden: bool = False
    flagged: bool = False
    locked: bool = False
    pinned: bool = False
    tags: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class RateWindow:
    actor_id: str
    action_type: str
    window_start: datetime
    count: int


@dataclass(frozen=True)
class RateDecision:
    action_type: str
    allowed: bool
    current_count: int
    limit: int
    reset_time: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        if self.allowed:
            return 0
        return max(0, int((self.reset_time - now).total_seconds()))


@dataclass(frozen=True)
class Keyword:
    phrase: str
    severity: int
    action_type: KeywordAction = KeywordAction.FLAG
    enabled: bool = True

    @property
    def normalized(self) -> str:
        return self.phrase.casefold().strip()


@dataclass(frozen=True)
class Rule:
    """Named automation rule: all conditions must hold for actions to apply."""

    rule_id: str
    name: str
    conditions: Mapping[str, Any]
    actions: tuple[str, ...]
    enabled: bool = True
    severity: int = 0

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Rule":
        rule_id = str(data.get("id") or data.get("rule_id"))
        return Rule(
            rule_id=rule_id,
            name=str(data.get("name", rule_id)),
            conditions=dict(data.get("when", data.get("conditions", {}))),
            actions=tuple(str(action) for action in data.get("then", data.get("actions", ()))),
            enabled=bool(data.get("enabled", True)),
            severity=int(data.get("severity", 0)),
        )


@dataclass
class Report:
    report_id: str
    comment_id: str
    reporter_id: str
    reason: ReportReason
    status: ReportStatus
    created_at: datetime
    updated_at: datetime
    notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    assigned_to: Optional[str] = None
    version: int = 0

    @property
    def priority(self) -> int:
        return self.reason.priority

    def copy(self, **changes: Any) -> "Report":
        return replace(self, **changes)


@dataclass(frozen=True)
class Escalation:
    escalation_id: str
    report_id: str
    from_moderator: str
    to_moderator: str
    reason: str
    created_at: datetime
    superseded: bool = False


@dataclass(frozen=True)
class ModerationAction:
    """Immutable audit record of an applied moderation action."""

    action_id: str
    action_type: str
    moderator_id: str
    target_user_id: Optional[str]
    target_comment_id: Optional[str]
    details: Mapping[str, Any]
    reason: Optional[str]
    created_at: datetime
    audit_pending: bool = False


@dataclass(frozen=True)
class AuditEntry:
    """Non-action audit row (report reviews, escalations)."""

    entry_id: str
    event: str
    actor_id: str
    target_type: str
    target_id: str
    meta: Mapping[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class AbuseSignal:
    signal_id: str
    signal_type: SignalType
    actor_id: str
    comment_id: str
    severity: int
    detected_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VoteOutcome:
    accepted: bool
    signals: tuple[AbuseSignal, ...] = ()
    dispatched: tuple[ModerationAction, ...] = ()
