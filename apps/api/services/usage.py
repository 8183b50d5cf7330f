"""Admission control and billing for paid generation jobs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.usage_record import UsageRecord
from services import ledger, rate_limiter
from services.atomic import run_atomic
from services.errors import InvalidAmountError, RateLimitedError, UsageNotFoundError

logger = logging.getLogger(__name__)

USAGE_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


def _utcnow(now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current if current.tzinfo is not None else current.replace(tzinfo=timezone.utc)


async def consume_for_usage(
    db: AsyncSession,
    user_id: str,
    resource_id: str,
    tier: str,
    credit_cost: int,
    *,
    user_identifier: Optional[str] = None,
    theme_ids: Optional[List[str]] = None,
    session_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Rate-check, debit and count one job as a single all-or-nothing unit.

    Raises ``RateLimitedError`` before any mutation, and ``InsufficientCreditsError``
    with the rate counters untouched. Credits are charged here, at admission;
    ``complete_usage`` never moves credits.
    """
    if isinstance(credit_cost, bool) or not isinstance(credit_cost, int) or credit_cost <= 0:
        raise InvalidAmountError(credit_cost)
    current = _utcnow(now)
    identifier = user_identifier or user_id

    async def _operation() -> Dict[str, Any]:
        decision, tracking, counts = await rate_limiter.apply_check(db, identifier, resource_id, tier, current)
        if not decision.allowed:
            raise RateLimitedError(
                reason=decision.reason or "rate limited",
                window=decision.window or "",
                reset_at=decision.reset_at,
                status=decision.to_dict(),
            )

        usage_id = str(uuid.uuid4())
        remaining_credits = await ledger.apply_debit(
            db,
            user_id,
            credit_cost,
            f"Usage: {resource_id}",
            usage_id=usage_id,
            now=current,
        )
        updated_counts = await rate_limiter.apply_increment(db, tracking, counts, current)
        db.add(
            UsageRecord(
                id=usage_id,
                user_id=user_id,
                resource_id=resource_id,
                tier=tier,
                credits_charged=credit_cost,
                theme_ids=list(theme_ids or []),
                session_id=session_id,
                metadata_json=metadata or {},
                status="pending",
                created_at=current,
            )
        )
        quota = rate_limiter.evaluate(decision.limits, updated_counts, current, current)
        return {
            "usage_id": usage_id,
            "credits_charged": credit_cost,
            "remaining_credits": remaining_credits,
            "remaining_quota": {
                "hourly": quota.hourly_remaining,
                "daily": quota.daily_remaining,
                "monthly": quota.monthly_remaining,
            },
            "reset_times": quota.to_dict()["reset_times"],
        }

    try:
        result = await run_atomic(db, _operation)
    except RateLimitedError as exc:
        logger.info("usage_rate_limited user=%s resource=%s reason=%s", user_id, resource_id, exc.reason)
        raise
    logger.info(
        "usage_admitted user=%s resource=%s usage=%s cost=%s remaining=%s",
        user_id,
        resource_id,
        result["usage_id"],
        credit_cost,
        result["remaining_credits"],
    )
    return result


def _usage_payload(record: UsageRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "resource_id": record.resource_id,
        "tier": record.tier,
        "credits_charged": record.credits_charged,
        "theme_ids": record.theme_ids or [],
        "session_id": record.session_id,
        "status": record.status,
        "processing_time_ms": record.processing_time_ms,
        "error_message": record.error_message,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }


async def complete_usage(
    db: AsyncSession,
    usage_id: str,
    status: str,
    processing_time_ms: Optional[int] = None,
    error_message: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Report a job outcome. Pure status update; a failed job is not refunded here."""
    if status not in USAGE_STATUSES:
        raise ValueError(f"Unsupported usage status: {status!r}")
    current = _utcnow(now)

    async def _operation() -> UsageRecord:
        result = await db.execute(select(UsageRecord).where(UsageRecord.id == usage_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise UsageNotFoundError(usage_id)
        record.status = status
        if processing_time_ms is not None:
            record.processing_time_ms = max(int(processing_time_ms), 0)
        if error_message is not None:
            record.error_message = error_message
        if status in TERMINAL_STATUSES:
            record.completed_at = current
        await db.flush()
        return record

    record = await run_atomic(db, _operation)
    logger.info("usage_status usage=%s status=%s", usage_id, status)
    return _usage_payload(record)


async def get_usage(db: AsyncSession, usage_id: str) -> Dict[str, Any]:
    result = await db.execute(select(UsageRecord).where(UsageRecord.id == usage_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise UsageNotFoundError(usage_id)
    return _usage_payload(record)
