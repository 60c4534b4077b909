"""Error taxonomy raised by the moderation engine."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from threadguard.moderation.domain.models import RateDecision


class ModerationError(Exception):
    """Base class for moderation engine failures."""

    code = "moderation_error"
    retryable = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(ModerationError):
    code = "validation_error"


class SelfVoteError(ValidationError):
    code = "self_vote"


class DuplicateReportError(ValidationError):
    code = "duplicate_report"


class NotFoundError(ValidationError):
    code = "not_found"


class RateLimitExceeded(ModerationError):
    code = "rate_limited"
    retryable = True

    def __init__(self, decision: RateDecision, *, now: Optional[datetime] = None) -> None:
        super().__init__(f"rate_limited:{decision.action_type}")
        self.decision = decision
        self.retry_after = decision.retry_after_seconds(now) if now else None


class ConflictError(ModerationError):
    code = "conflict"
    retryable = True


class DependencyUnavailable(ModerationError):
    code = "dependency_unavailable"
    retryable = True


class InvariantViolation(ModerationError):
    code = "invariant_violation"
