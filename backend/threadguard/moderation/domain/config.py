"""Versioned configuration snapshots for the moderation engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from threadguard.moderation.domain.errors import ValidationError
from threadguard.moderation.domain.models import Keyword, KeywordAction, RateAction, Rule

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int = HOUR_SECONDS
    limits: Mapping[str, int] = field(
        default_factory=lambda: {
            RateAction.COMMENT.value: 30,
            RateAction.VOTE.value: 100,
            RateAction.REPORT.value: 10,
            RateAction.EDIT.value: 30,
        }
    )
    default_limit: int = 60

    def limit_for(self, action_type: str) -> int:
        return int(self.limits.get(action_type, self.default_limit))


@dataclass(frozen=True)
class ReportThresholds:
    auto_warn_threshold: int = 3
    auto_mute_threshold: int = 5
    auto_ban_threshold: int = 10
    auto_mute_minutes: int = 24 * 60

    def ladder(self) -> tuple[tuple[int, str], ...]:
        return (
            (self.auto_warn_threshold, "warn_user"),
            (self.auto_mute_threshold, "mute_user"),
            (self.auto_ban_threshold, "ban_user"),
        )


@dataclass(frozen=True)
class VoteAbuseConfig:
    rapid_vote_window_seconds: int = HOUR_SECONDS
    rapid_vote_threshold: int = 50
    # Brigading stays off until an operator picks a voter count
    brigade_min_voters: Optional[int] = None
    brigade_window_seconds: int = 300
    action_severity_threshold: int = 3
    vote_restriction_minutes: int = 60


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration snapshot passed into every evaluation."""

    version: int = 1
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    keywords: tuple[Keyword, ...] = ()
    rules: tuple[Rule, ...] = ()
    reports: ReportThresholds = field(default_factory=ReportThresholds)
    votes: VoteAbuseConfig = field(default_factory=VoteAbuseConfig)
    dispatch_dedup_seconds: int = 60
    escalation_debounce_seconds: int = 30
    audit_retry_attempts: int = 3
    default_mute_minutes: int = 60

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for keyword in self.keywords:
            if not 1 <= keyword.severity <= 5:
                raise ValidationError(f"keyword_severity_out_of_range:{keyword.phrase}")
            if keyword.normalized in seen:
                raise ValidationError(f"duplicate_keyword:{keyword.phrase}")
            seen.add(keyword.normalized)

    @staticmethod
    def default() -> "EngineConfig":
        return EngineConfig()

    def enabled_keywords(self) -> tuple[Keyword, ...]:
        return tuple(keyword for keyword in self.keywords if keyword.enabled)

    def enabled_rules(self) -> tuple[Rule, ...]:
        return tuple(rule for rule in self.rules if rule.enabled)

    def with_updates(self, **changes: Any) -> "EngineConfig":
        """Return the next snapshot; callers never mutate a live config."""

        changes.setdefault("version", self.version + 1)
        return replace(self, **changes)

    # --- Serialization ---------------------------------------------------

    @staticmethod
    def from_mapping(config: Mapping[str, Any]) -> "EngineConfig":
        base = EngineConfig.default()
        rate_cfg = config.get("rate_limits", {}) or {}
        report_cfg = config.get("reports", {}) or {}
        vote_cfg = config.get("votes", {}) or {}
        limits = dict(base.rate_limits.limits)
        limits.update({str(key): int(value) for key, value in (rate_cfg.get("limits", {}) or {}).items()})
        brigade_min = vote_cfg.get("brigade_min_voters", base.votes.brigade_min_voters)
        return EngineConfig(
            version=int(config.get("version", base.version)),
            rate_limits=RateLimitConfig(
                window_seconds=int(rate_cfg.get("window_seconds", base.rate_limits.window_seconds)),
                limits=limits,
                default_limit=int(rate_cfg.get("default_limit", base.rate_limits.default_limit)),
            ),
            keywords=tuple(_keyword_from_mapping(item) for item in config.get("keywords", []) or []),
            rules=tuple(Rule.from_dict(item) for item in config.get("rules", []) or []),
            reports=ReportThresholds(
                auto_warn_threshold=int(report_cfg.get("auto_warn_threshold", base.reports.auto_warn_threshold)),
                auto_mute_threshold=int(report_cfg.get("auto_mute_threshold", base.reports.auto_mute_threshold)),
                auto_ban_threshold=int(report_cfg.get("auto_ban_threshold", base.reports.auto_ban_threshold)),
                auto_mute_minutes=int(report_cfg.get("auto_mute_minutes", base.reports.auto_mute_minutes)),
            ),
            votes=VoteAbuseConfig(
                rapid_vote_window_seconds=int(
                    vote_cfg.get("rapid_vote_window_seconds", base.votes.rapid_vote_window_seconds)
                ),
                rapid_vote_threshold=int(vote_cfg.get("rapid_vote_threshold", base.votes.rapid_vote_threshold)),
                brigade_min_voters=int(brigade_min) if brigade_min is not None else None,
                brigade_window_seconds=int(vote_cfg.get("brigade_window_seconds", base.votes.brigade_window_seconds)),
                action_severity_threshold=int(
                    vote_cfg.get("action_severity_threshold", base.votes.action_severity_threshold)
                ),
                vote_restriction_minutes=int(
                    vote_cfg.get("vote_restriction_minutes", base.votes.vote_restriction_minutes)
                ),
            ),
            dispatch_dedup_seconds=int(config.get("dispatch_dedup_seconds", base.dispatch_dedup_seconds)),
            escalation_debounce_seconds=int(
                config.get("escalation_debounce_seconds", base.escalation_debounce_seconds)
            ),
            audit_retry_attempts=max(1, int(config.get("audit_retry_attempts", base.audit_retry_attempts))),
            default_mute_minutes=int(config.get("default_mute_minutes", base.default_mute_minutes)),
        )


def _keyword_from_mapping(data: Mapping[str, Any]) -> Keyword:
    return Keyword(
        phrase=str(data["phrase"]),
        severity=int(data.get("severity", 1)),
        action_type=KeywordAction(str(data.get("action_type", KeywordAction.FLAG.value))),
        enabled=bool(data.get("enabled", True)),
    )


def load_engine_config(path: str | Path | None) -> EngineConfig:
    """Load an engine config from a YAML (or JSON) file."""

    if not path:
        return EngineConfig.default()
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("moderation config file missing at %s; using defaults", path)
        return EngineConfig.default()
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning("failed to parse moderation config: %s", exc)
        return EngineConfig.default()
    if not isinstance(data, Mapping):
        logger.warning("moderation config file invalid; falling back to defaults")
        return EngineConfig.default()
    return EngineConfig.from_mapping(data)
