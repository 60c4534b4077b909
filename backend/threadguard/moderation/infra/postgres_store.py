"""PostgreSQL-backed moderation store and rate window counters."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

import asyncpg

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
    KeywordAction,
    ModerationAction,
    Report,
    ReportReason,
    ReportStatus,
    Role,
    Rule,
    SignalType,
)
from threadguard.moderation.domain.store import ModerationStore
from threadguard.moderation.domain.window_counter import CounterBackend, WindowKey

_ACTOR_COLUMNS = frozenset({"role", "banned", "shadow_banned", "muted_until", "warnings"})
_COMMENT_COLUMNS = frozenset({"deleted", "hidden", "flagged", "locked", "pinned", "tags"})

_REPORT_FIELDS = """
    report_id, comment_id, reporter_id, reason, status, created_at, updated_at,
    notes, reviewed_by, reviewed_at, assigned_to, version
"""


class PostgresModerationStore(ModerationStore):
    """Persists moderation state using asyncpg."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # --- Actors and comments ------------------------------------------------

    async def get_actor(self, actor_id: str) -> Actor | None:
        record = await self.pool.fetchrow(
            """
            SELECT actor_id, role, banned, shadow_banned, muted_until, created_at, warnings
            FROM mod_actor WHERE actor_id = $1
            """,
            actor_id,
        )
        return _actor_from_record(record) if record else None

    async def upsert_actor(self, actor: Actor) -> Actor:
        query = """
        INSERT INTO mod_actor (actor_id, role, banned, shadow_banned, muted_until, created_at, warnings)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        ON CONFLICT (actor_id)
        DO UPDATE SET
            role = EXCLUDED.role,
            banned = EXCLUDED.banned,
            shadow_banned = EXCLUDED.shadow_banned,
            muted_until = EXCLUDED.muted_until,
            created_at = COALESCE(mod_actor.created_at, EXCLUDED.created_at),
            warnings = EXCLUDED.warnings
        RETURNING actor_id, role, banned, shadow_banned, muted_until, created_at, warnings
        """
        record = await self.pool.fetchrow(
            query,
            actor.actor_id,
            actor.role.value,
            actor.banned,
            actor.shadow_banned,
            actor.muted_until,
            actor.created_at,
            actor.warnings,
        )
        assert record is not None
        return _actor_from_record(record)

    async def apply_actor_change(self, actor_id: str, changes: Mapping[str, Any]) -> Actor:
        assignments, values = _assignments(changes, _ACTOR_COLUMNS)
        record = await self.pool.fetchrow(
            f"""
            UPDATE mod_actor SET {assignments} WHERE actor_id = $1
            RETURNING actor_id, role, banned, shadow_banned, muted_until, created_at, warnings
            """,
            actor_id,
            *values,
        )
        if record is None:
            raise NotFoundError(f"actor_not_found:{actor_id}")
        return _actor_from_record(record)

    async def get_comment(self, comment_id: str) -> CommentState | None:
        record = await self.pool.fetchrow(
            """
            SELECT comment_id, author_id, thread_id, deleted, hidden, flagged, locked, pinned, tags
            FROM mod_comment_state WHERE comment_id = $1
            """,
            comment_id,
        )
        return _comment_from_record(record) if record else None

    async def upsert_comment(self, comment: CommentState) -> CommentState:
        query = """
        INSERT INTO mod_comment_state (comment_id, author_id, thread_id, deleted, hidden, flagged, locked, pinned, tags)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        ON CONFLICT (comment_id)
        DO UPDATE SET
            thread_id = EXCLUDED.thread_id,
            deleted = EXCLUDED.deleted,
            hidden = EXCLUDED.hidden,
            flagged = EXCLUDED.flagged,
            locked = EXCLUDED.locked,
            pinned = EXCLUDED.pinned,
            tags = EXCLUDED.tags
        RETURNING comment_id, author_id, thread_id, deleted, hidden, flagged, locked, pinned, tags
        """
        record = await self.pool.fetchrow(
            query,
            comment.comment_id,
            comment.author_id,
            comment.thread_id,
            comment.deleted,
            comment.hidden,
            comment.flagged,
            comment.locked,
            comment.pinned,
            sorted(comment.tags),
        )
        assert record is not None
        return _comment_from_record(record)

    async def apply_comment_change(self, comment_id: str, changes: Mapping[str, Any]) -> CommentState:
        assignments, values = _assignments(changes, _COMMENT_COLUMNS)
        record = await self.pool.fetchrow(
            f"""
            UPDATE mod_comment_state SET {assignments} WHERE comment_id = $1
            RETURNING comment_id, author_id, thread_id, deleted, hidden, flagged, locked, pinned, tags
            """,
            comment_id,
            *values,
        )
        if record is None:
            raise NotFoundError(f"comment_not_found:{comment_id}")
        return _comment_from_record(record)

    # --- Reports and escalations --------------------------------------------

    async def create_report(self, report: Report) -> Report:
        query = f"""
        INSERT INTO mod_report (report_id, comment_id, reporter_id, reason, status, created_at, updated_at, notes)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        RETURNING {_REPORT_FIELDS}
        """
        try:
            record = await self.pool.fetchrow(
                query,
                report.report_id,
                report.comment_id,
                report.reporter_id,
                report.reason.value,
                report.status.value,
                report.created_at,
                report.updated_at,
                report.notes,
            )
        except asyncpg.exceptions.UniqueViolationError as exc:
            raise DuplicateReportError("duplicate_report") from exc
        assert record is not None
        return _report_from_record(record)

    async def get_report(self, report_id: str) -> Report | None:
        record = await self.pool.fetchrow(f"SELECT {_REPORT_FIELDS} FROM mod_report WHERE report_id = $1", report_id)
        return _report_from_record(record) if record else None

    async def save_report(self, report: Report, *, expected_version: int) -> Report:
        return await _update_report(self.pool, report, expected_version)

    async def count_open_reports(self, comment_id: str) -> int:
        count = await self.pool.fetchval(
            "SELECT COUNT(*) FROM mod_report WHERE comment_id = $1 AND status <> 'dismissed'",
            comment_id,
        )
        return int(count or 0)

    async def list_reports(self, *, statuses: Iterable[ReportStatus] | None = None) -> Sequence[Report]:
        if statuses is None:
            rows = await self.pool.fetch(f"SELECT {_REPORT_FIELDS} FROM mod_report ORDER BY created_at")
        else:
            rows = await self.pool.fetch(
                f"SELECT {_REPORT_FIELDS} FROM mod_report WHERE status = ANY($1::text[]) ORDER BY created_at",
                [status.value for status in statuses],
            )
        return [_report_from_record(row) for row in rows]

    async def escalate_report(self, report: Report, escalation: Escalation, *, expected_version: int) -> Report:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                saved = await _update_report(conn, report, expected_version)
                await conn.execute(
                    "UPDATE mod_escalation SET superseded = TRUE WHERE report_id = $1 AND superseded = FALSE",
                    escalation.report_id,
                )
                await conn.execute(
                    """
                    INSERT INTO mod_escalation
                        (escalation_id, report_id, from_moderator, to_moderator, reason, created_at, superseded)
                    VALUES ($1, $2, $3, $4, $5, $6, FALSE)
                    """,
                    escalation.escalation_id,
                    escalation.report_id,
                    escalation.from_moderator,
                    escalation.to_moderator,
                    escalation.reason,
                    escalation.created_at,
                )
        return saved

    async def list_escalations(self, report_id: str) -> Sequence[Escalation]:
        rows = await self.pool.fetch(
            """
            SELECT escalation_id, report_id, from_moderator, to_moderator, reason, created_at, superseded
            FROM mod_escalation WHERE report_id = $1 ORDER BY created_at
            """,
            report_id,
        )
        return [Escalation(**dict(row)) for row in rows]

    # --- Audit --------------------------------------------------------------

    async def append_action(self, action: ModerationAction) -> ModerationAction:
        await self.pool.execute(
            """
            INSERT INTO mod_action
                (action_id, action_type, moderator_id, target_user_id, target_comment_id, details, reason, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
            ON CONFLICT (action_id) DO NOTHING
            """,
            action.action_id,
            action.action_type,
            action.moderator_id,
            action.target_user_id,
            action.target_comment_id,
            json.dumps(dict(action.details), default=str),
            action.reason,
            action.created_at,
        )
        return action

    async def find_recent_action(
        self,
        action_type: str,
        target_user_id: Optional[str],
        target_comment_id: Optional[str],
        *,
        since: datetime,
    ) -> ModerationAction | None:
        record = await self.pool.fetchrow(
            """
            SELECT action_id, action_type, moderator_id, target_user_id, target_comment_id, details, reason, created_at
            FROM mod_action
            WHERE action_type = $1
              AND target_user_id IS NOT DISTINCT FROM $2
              AND target_comment_id IS NOT DISTINCT FROM $3
              AND created_at >= $4
            ORDER BY created_at DESC
            LIMIT 1
            """,
            action_type,
            target_user_id,
            target_comment_id,
            since,
        )
        return _action_from_record(record) if record else None

    async def list_actions(
        self,
        *,
        target_user_id: Optional[str] = None,
        target_comment_id: Optional[str] = None,
    ) -> Sequence[ModerationAction]:
        rows = await self.pool.fetch(
            """
            SELECT action_id, action_type, moderator_id, target_user_id, target_comment_id, details, reason, created_at
            FROM mod_action
            WHERE ($1::text IS NULL OR target_user_id = $1)
              AND ($2::text IS NULL OR target_comment_id = $2)
            ORDER BY created_at
            """,
            target_user_id,
            target_comment_id,
        )
        return [_action_from_record(row) for row in rows]

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        await self.pool.execute(
            """
            INSERT INTO mod_audit (entry_id, event, actor_id, target_type, target_id, meta, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            ON CONFLICT (entry_id) DO NOTHING
            """,
            entry.entry_id,
            entry.event,
            entry.actor_id,
            entry.target_type,
            entry.target_id,
            json.dumps(dict(entry.meta), default=str),
            entry.created_at,
        )
        return entry

    async def list_audit(self, *, after: datetime | None, limit: int) -> Sequence[AuditEntry]:
        rows = await self.pool.fetch(
            """
            SELECT entry_id, event, actor_id, target_type, target_id, meta, created_at
            FROM mod_audit
            WHERE ($1::timestamptz IS NULL OR created_at > $1)
            ORDER BY created_at
            LIMIT $2
            """,
            after,
            limit,
        )
        return [
            AuditEntry(
                entry_id=row["entry_id"],
                event=row["event"],
                actor_id=row["actor_id"],
                target_type=row["target_type"],
                target_id=row["target_id"],
                meta=_load_json(row["meta"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def append_signal(self, signal: AbuseSignal) -> AbuseSignal:
        await self.pool.execute(
            """
            INSERT INTO mod_abuse_signal (signal_id, signal_type, actor_id, comment_id, severity, detected_at, details)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
            """,
            signal.signal_id,
            signal.signal_type.value,
            signal.actor_id,
            signal.comment_id,
            signal.severity,
            signal.detected_at,
            json.dumps(dict(signal.details), default=str),
        )
        return signal

    async def list_signals(self, *, actor_id: Optional[str] = None) -> Sequence[AbuseSignal]:
        rows = await self.pool.fetch(
            """
            SELECT signal_id, signal_type, actor_id, comment_id, severity, detected_at, details
            FROM mod_abuse_signal
            WHERE ($1::text IS NULL OR actor_id = $1)
            ORDER BY detected_at
            """,
            actor_id,
        )
        return [
            AbuseSignal(
                signal_id=row["signal_id"],
                signal_type=SignalType(row["signal_type"]),
                actor_id=row["actor_id"],
                comment_id=row["comment_id"],
                severity=int(row["severity"]),
                detected_at=row["detected_at"],
                details=_load_json(row["details"]),
            )
            for row in rows
        ]

    # --- Keywords and rules -------------------------------------------------

    async def list_keywords(self) -> Sequence[Keyword]:
        rows = await self.pool.fetch(
            "SELECT display_phrase, severity, action_type, enabled FROM mod_keyword ORDER BY phrase"
        )
        return [
            Keyword(
                phrase=row["display_phrase"],
                severity=int(row["severity"]),
                action_type=KeywordAction(row["action_type"]),
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    async def upsert_keyword(self, keyword: Keyword, *, replace_existing: bool = False) -> Keyword:
        if not 1 <= keyword.severity <= 5:
            raise ValidationError(f"keyword_severity_out_of_range:{keyword.phrase}")
        conflict = (
            "DO UPDATE SET display_phrase = EXCLUDED.display_phrase, severity = EXCLUDED.severity, "
            "action_type = EXCLUDED.action_type, enabled = EXCLUDED.enabled"
            if replace_existing
            else "DO NOTHING"
        )
        status = await self.pool.execute(
            f"""
            INSERT INTO mod_keyword (phrase, display_phrase, severity, action_type, enabled)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (phrase) {conflict}
            """,
            keyword.normalized,
            keyword.phrase,
            keyword.severity,
            keyword.action_type.value,
            keyword.enabled,
        )
        if status.endswith(" 0"):
            raise ValidationError(f"duplicate_keyword:{keyword.phrase}")
        return keyword

    async def list_rules(self) -> Sequence[Rule]:
        rows = await self.pool.fetch(
            "SELECT rule_id, name, conditions, actions, enabled, severity FROM mod_rule ORDER BY rule_id"
        )
        return [
            Rule(
                rule_id=row["rule_id"],
                name=row["name"],
                conditions=_load_json(row["conditions"]),
                actions=tuple(row["actions"] or ()),
                enabled=bool(row["enabled"]),
                severity=int(row["severity"]),
            )
            for row in rows
        ]

    async def upsert_rule(self, rule: Rule) -> Rule:
        await self.pool.execute(
            """
            INSERT INTO mod_rule (rule_id, name, conditions, actions, enabled, severity)
            VALUES ($1, $2, $3::jsonb, $4, $5, $6)
            ON CONFLICT (rule_id)
            DO UPDATE SET
                name = EXCLUDED.name,
                conditions = EXCLUDED.conditions,
                actions = EXCLUDED.actions,
                enabled = EXCLUDED.enabled,
                severity = EXCLUDED.severity
            """,
            rule.rule_id,
            rule.name,
            json.dumps(dict(rule.conditions)),
            list(rule.actions),
            rule.enabled,
            rule.severity,
        )
        return rule


class PostgresCounterBackend(CounterBackend):
    """Rate windows as rows; the upsert is atomic per key."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def incr(self, key: WindowKey, ttl_seconds: int) -> int:
        count = await self.pool.fetchval(
            """
            INSERT INTO mod_rate_window (actor_id, action_type, window_start, count)
            VALUES ($1, $2, $3, 1)
            ON CONFLICT (actor_id, action_type, window_start)
            DO UPDATE SET count = mod_rate_window.count + 1
            RETURNING count
            """,
            key.actor_id,
            key.action_type,
            key.window_start,
        )
        return int(count)

    async def get(self, key: WindowKey) -> int:
        count = await self.pool.fetchval(
            "SELECT count FROM mod_rate_window WHERE actor_id = $1 AND action_type = $2 AND window_start = $3",
            key.actor_id,
            key.action_type,
            key.window_start,
        )
        return int(count or 0)

    async def prune(self, cutoff: datetime) -> int:
        status = await self.pool.execute("DELETE FROM mod_rate_window WHERE window_start < $1", cutoff)
        return int(status.split()[-1])


async def _update_report(conn: Any, report: Report, expected_version: int) -> Report:
    """Version-guarded report update on a pool or an open connection."""

    record = await conn.fetchrow(
        f"""
        UPDATE mod_report
        SET status = $3, updated_at = $4, notes = $5, reviewed_by = $6, reviewed_at = $7,
            assigned_to = $8, version = version + 1
        WHERE report_id = $1 AND version = $2
        RETURNING {_REPORT_FIELDS}
        """,
        report.report_id,
        expected_version,
        report.status.value,
        report.updated_at,
        report.notes,
        report.reviewed_by,
        report.reviewed_at,
        report.assigned_to,
    )
    if record is None:
        exists = await conn.fetchval("SELECT 1 FROM mod_report WHERE report_id = $1", report.report_id)
        if exists is None:
            raise NotFoundError(f"report_not_found:{report.report_id}")
        raise ConflictError("report_version_conflict")
    return _report_from_record(record)


def _assignments(changes: Mapping[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(changes) - allowed
    if unknown or not changes:
        raise ValidationError(f"unsupported_change:{','.join(sorted(unknown)) or 'empty'}")
    columns = sorted(changes)
    clause = ", ".join(f"{column} = ${index}" for index, column in enumerate(columns, start=2))
    return clause, [_column_value(changes[column]) for column in columns]


def _column_value(value: Any) -> Any:
    if isinstance(value, Role):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return value


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _actor_from_record(record: asyncpg.Record) -> Actor:
    return Actor(
        actor_id=record["actor_id"],
        role=Role(record["role"]),
        banned=bool(record["banned"]),
        shadow_banned=bool(record["shadow_banned"]),
        muted_until=record["muted_until"],
        created_at=record["created_at"],
        warnings=int(record["warnings"]),
    )


def _comment_from_record(record: asyncpg.Record) -> CommentState:
    return CommentState(
        comment_id=record["comment_id"],
        author_id=record["author_id"],
        thread_id=record["thread_id"],
        deleted=bool(record["deleted"]),
        hidden=bool(record["hidden"]),
        flagged=bool(record["flagged"]),
        locked=bool(record["locked"]),
        pinned=bool(record["pinned"]),
        tags=set(record["tags"] or ()),
    )


def _report_from_record(record: asyncpg.Record) -> Report:
    return Report(
        report_id=record["report_id"],
        comment_id=record["comment_id"],
        reporter_id=record["reporter_id"],
        reason=ReportReason(record["reason"]),
        status=ReportStatus(record["status"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
        notes=record["notes"],
        reviewed_by=record["reviewed_by"],
        reviewed_at=record["reviewed_at"],
        assigned_to=record["assigned_to"],
        version=int(record["version"]),
    )


def _action_from_record(record: asyncpg.Record) -> ModerationAction:
    return ModerationAction(
        action_id=record["action_id"],
        action_type=record["action_type"],
        moderator_id=record["moderator_id"],
        target_user_id=record["target_user_id"],
        target_comment_id=record["target_comment_id"],
        details=_load_json(record["details"]),
        reason=record["reason"],
        created_at=record["created_at"],
    )
