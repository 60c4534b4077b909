"""Moderation engine integration helpers."""

from threadguard.moderation.domain.container import (
    bootstrap,
    configure,
    configure_postgres,
    get_engine,
    shutdown,
)
from threadguard.moderation.domain.engine import ContentOutcome, ModerationEngine

__all__ = [
    "ContentOutcome",
    "ModerationEngine",
    "bootstrap",
    "configure",
    "configure_postgres",
    "get_engine",
    "shutdown",
]
