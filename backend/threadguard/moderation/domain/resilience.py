"""Bounded timeout and retry for calls into external collaborators."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import asyncpg
from redis.exceptions import RedisError

from threadguard.moderation.domain.errors import DependencyUnavailable
from threadguard.obs import metrics
from threadguard.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    OSError,
    RedisError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    DependencyUnavailable,
)


async def call_external(
    operation: str,
    factory: Callable[[], Awaitable[T]],
    *,
    timeout: Optional[float] = None,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Run ``factory()`` with a timeout, retrying transient failures.

    ``factory`` must build a fresh awaitable on every call. Errors that are not
    transient (validation, duplicates) propagate on the first attempt.
    """

    timeout = settings.external_call_timeout_seconds if timeout is None else timeout
    attempts = settings.external_call_attempts if attempts is None else max(1, attempts)
    delay = settings.external_call_backoff_seconds if backoff is None else backoff
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(factory(), timeout=timeout)
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            if attempt == attempts:
                break
            metrics.MOD_EXTERNAL_RETRIES_TOTAL.labels(operation=operation).inc()
            logger.warning(
                "external call failed; retrying",
                extra={"operation": operation, "attempt": attempt, "error": repr(exc)},
            )
            await asyncio.sleep(delay * (2 ** (attempt - 1)))
    logger.error(
        "external call exhausted retries",
        extra={"operation": operation, "attempts": attempts, "error": repr(last_exc)},
    )
    raise DependencyUnavailable(f"{operation}_unavailable") from last_exc
