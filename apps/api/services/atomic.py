"""Retry-on-conflict unit of work for row-scoped atomic mutations."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from config import settings
from services.errors import PersistenceConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_atomic(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: Optional[int] = None,
) -> T:
    """Run ``operation`` and commit, retrying the whole unit on persistence conflicts.

    ``operation`` must re-read every row it mutates, because each failed attempt
    is rolled back before the next one starts. Business errors roll back and
    propagate immediately; conflicts are retried up to ``LEDGER_MAX_RETRIES``
    times and then surface as ``PersistenceConflictError``.
    """
    attempts = max(int(max_attempts or settings.LEDGER_MAX_RETRIES), 1)
    max_wait = max(int(settings.LEDGER_RETRY_MAX_WAIT_MS), 0) / 1000.0

    result: Optional[T] = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_random(0, max_wait),
        retry=retry_if_exception_type(PersistenceConflictError),
        reraise=True,
    ):
        with attempt:
            try:
                result = await operation()
                await db.commit()
            except (IntegrityError, OperationalError) as exc:
                await db.rollback()
                logger.warning(
                    "Persistence conflict (attempt %s/%s): %s",
                    attempt.retry_state.attempt_number,
                    attempts,
                    exc.__class__.__name__,
                )
                raise PersistenceConflictError("The datastore rejected a concurrent update.") from exc
            except PersistenceConflictError:
                await db.rollback()
                logger.debug("Optimistic version conflict (attempt %s/%s)", attempt.retry_state.attempt_number, attempts)
                raise
            except BaseException:
                await db.rollback()
                raise
    return result  # type: ignore[return-value]
