"""Keyword and automation-rule evaluation for incoming content."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional

from threadguard.moderation.domain.config import EngineConfig
from threadguard.moderation.domain.models import Actor, Keyword, Role, Rule
from threadguard.obs import metrics

logger = logging.getLogger(__name__)

CONTENT_ACTIONS = ("delete", "hide", "flag", "warn", "escalate")

SEVERITY_ACTIONS: Mapping[int, frozenset[str]] = {
    1: frozenset({"flag"}),
    2: frozenset({"flag", "warn"}),
    3: frozenset({"hide", "warn"}),
    4: frozenset({"hide", "warn", "escalate"}),
    5: frozenset({"delete", "warn", "escalate"}),
}

_LINK_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)


@dataclass(frozen=True)
class EvaluationContext:
    """Snapshot of actor activity supplied by the caller."""

    now: datetime
    recent_comment_count: int = 0
    recent_report_count: int = 0
    trust_score: Optional[int] = None
    link_count: Optional[int] = None
    flags: Mapping[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """Advisory output of an evaluation; the dispatcher applies it."""

    flag: bool = False
    hide: bool = False
    delete: bool = False
    warn: bool = False
    escalate: bool = False
    severity: int = 0
    matched_keywords: tuple[str, ...] = ()
    rule_ids: tuple[str, ...] = ()
    extra_actions: tuple[str, ...] = ()
    config_version: int = 0

    @property
    def actions(self) -> tuple[str, ...]:
        chosen = tuple(name for name in CONTENT_ACTIONS if getattr(self, name))
        return chosen + self.extra_actions

    @property
    def is_noop(self) -> bool:
        return not self.actions


@dataclass(frozen=True)
class KeywordMatch:
    severity: int
    phrases: tuple[str, ...]
    actions: frozenset[str]


@lru_cache(maxsize=4096)
def _keyword_pattern(phrase: str) -> re.Pattern[str]:
    parts = [re.escape(part) for part in phrase.split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(parts) + r"(?!\w)")


def match_keywords(content: str, keywords: Iterable[Keyword]) -> KeywordMatch:
    """Case-insensitive, word-bounded matching; severity is the maximum found."""

    folded = content.casefold()
    phrases: set[str] = set()
    actions: set[str] = set()
    severity = 0
    for keyword in keywords:
        if not keyword.enabled or not keyword.normalized:
            continue
        if not _keyword_pattern(keyword.normalized).search(folded):
            continue
        phrases.add(keyword.normalized)
        actions.update(SEVERITY_ACTIONS.get(keyword.severity, frozenset()))
        actions.add(keyword.action_type.value)
        severity = max(severity, keyword.severity)
        metrics.MOD_KEYWORD_MATCHES_TOTAL.labels(severity=str(keyword.severity)).inc()
    return KeywordMatch(severity=severity, phrases=tuple(sorted(phrases)), actions=frozenset(actions))


class PredicateEvaluator:
    """Helpers to evaluate rule conditions against an evaluation context."""

    def __init__(self, content: str, actor: Actor, context: EvaluationContext, keyword_severity: int) -> None:
        self.content = content
        self.actor = actor
        self.context = context
        self.keyword_severity = keyword_severity

    def matches(self, rule: Rule) -> bool:
        if not rule.conditions:
            return False
        for predicate, value in rule.conditions.items():
            resolver = _PREDICATES.get(predicate)
            if resolver is None:
                logger.debug("unknown rule predicate", extra={"rule_id": rule.rule_id, "predicate": predicate})
                return False
            try:
                if not resolver(self, value):
                    return False
            except (TypeError, ValueError):
                logger.debug("invalid rule operand", extra={"rule_id": rule.rule_id, "predicate": predicate})
                return False
        return True

    def _account_age_days(self) -> float:
        return self.actor.account_age(self.context.now).total_seconds() / 86400

    def _link_count(self) -> int:
        if self.context.link_count is not None:
            return self.context.link_count
        return len(_LINK_PATTERN.findall(self.content))

    def _trust_below(self, threshold: Any) -> bool:
        score = self.context.trust_score if self.context.trust_score is not None else 50
        return score < int(threshold)

    def _flags_all_of(self, keys: Iterable[str]) -> bool:
        return all(bool(self.context.flags.get(key)) for key in keys)

    def _role_in(self, roles: Iterable[str]) -> bool:
        return self.actor.role in {Role(str(role)) for role in roles}


_PREDICATES = {
    "account_age_days_below": lambda ev, v: ev._account_age_days() < float(v),
    "account_age_days_at_least": lambda ev, v: ev._account_age_days() >= float(v),
    "recent_comment_count_at_least": lambda ev, v: ev.context.recent_comment_count >= int(v),
    "recent_report_count_at_least": lambda ev, v: ev.context.recent_report_count >= int(v),
    "trust_score_below": lambda ev, v: ev._trust_below(v),
    "content_length_at_least": lambda ev, v: len(ev.content) >= int(v),
    "link_count_at_least": lambda ev, v: ev._link_count() >= int(v),
    "keyword_severity_at_least": lambda ev, v: ev.keyword_severity >= int(v),
    "flags.all_of": lambda ev, v: ev._flags_all_of(v),
    "role_in": lambda ev, v: ev._role_in(v),
}


def evaluate_content(content: str, actor: Actor, context: EvaluationContext, config: EngineConfig) -> Decision:
    """Evaluate content against keywords and automation rules.

    Pure: the result depends only on the arguments, and the same snapshot
    always produces the same decision.
    """

    match = match_keywords(content, config.enabled_keywords())
    actions = set(match.actions)
    severity = match.severity
    extras: list[str] = []
    rule_ids: list[str] = []
    evaluator = PredicateEvaluator(content, actor, context, match.severity)
    for rule in config.enabled_rules():
        if not evaluator.matches(rule):
            continue
        rule_ids.append(rule.rule_id)
        severity = max(severity, min(5, rule.severity))
        metrics.MOD_RULE_MATCHES_TOTAL.labels(rule_id=rule.rule_id).inc()
        for action in rule.actions:
            if action in CONTENT_ACTIONS:
                actions.add(action)
            elif action not in extras:
                extras.append(action)
    decision = Decision(
        flag="flag" in actions,
        hide="hide" in actions,
        delete="delete" in actions,
        warn="warn" in actions,
        escalate="escalate" in actions,
        severity=severity,
        matched_keywords=match.phrases,
        rule_ids=tuple(rule_ids),
        extra_actions=tuple(extras),
        config_version=config.version,
    )
    metrics.MOD_DECISIONS_TOTAL.labels(severity=str(severity)).inc()
    return decision
