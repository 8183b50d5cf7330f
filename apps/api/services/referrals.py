"""Referral tracking and the one-time dual bonus on completion."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TransactionType
from models.referral import Referral
from services import ledger
from services.atomic import run_atomic
from services.errors import PersistenceConflictError

logger = logging.getLogger(__name__)


def _referral_payload(referral: Referral) -> Dict[str, Any]:
    return {
        "id": referral.id,
        "referrer_user_id": referral.referrer_user_id,
        "referred_email": referral.referred_email,
        "referred_user_id": referral.referred_user_id,
        "status": referral.status,
        "credits_earned": referral.credits_earned,
        "created_at": referral.created_at.isoformat() if referral.created_at else None,
        "completed_at": referral.completed_at.isoformat() if referral.completed_at else None,
    }


async def create_referral(db: AsyncSession, referrer_id: str, referred_email: str) -> Dict[str, Any]:
    email = (referred_email or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("referred_email must be a valid email address")

    async def _operation() -> Referral:
        referral = Referral(
            referrer_user_id=referrer_id,
            referred_email=email,
            status="pending",
            credits_earned=0,
            created_at=datetime.now(timezone.utc),
        )
        db.add(referral)
        await db.flush()
        return referral

    referral = await run_atomic(db, _operation)
    logger.info("referral_created referrer=%s referral=%s", referrer_id, referral.id)
    return _referral_payload(referral)


async def complete_referral(
    db: AsyncSession,
    referrer_id: str,
    referred_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Complete the oldest pending referral and credit both parties, exactly once.

    Returns ``None`` (a silent no-op) when there is nothing to complete, which
    covers duplicate signup triggers for the same pair.
    """
    if referrer_id == referred_id:
        logger.warning("referral_self_completion_ignored user=%s", referrer_id)
        return None

    current = now or datetime.now(timezone.utc)
    referrer_bonus = max(int(settings.REFERRAL_REFERRER_BONUS), 0)
    welcome_bonus = max(int(settings.REFERRAL_WELCOME_BONUS), 0)

    async def _operation() -> Optional[Referral]:
        already = await db.execute(
            select(Referral.id).where(
                Referral.referrer_user_id == referrer_id,
                Referral.referred_user_id == referred_id,
                Referral.status == "completed",
            )
        )
        if already.first() is not None:
            return None

        result = await db.execute(
            select(Referral)
            .where(
                Referral.referrer_user_id == referrer_id,
                Referral.referred_user_id.is_(None),
                Referral.status == "pending",
            )
            .order_by(Referral.created_at.asc(), Referral.id.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        referral = result.scalar_one_or_none()
        if referral is None:
            return None

        claimed = await db.execute(
            update(Referral)
            .where(Referral.id == referral.id, Referral.status == "pending", Referral.referred_user_id.is_(None))
            .values(
                status="completed",
                referred_user_id=referred_id,
                credits_earned=referrer_bonus,
                completed_at=current,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise PersistenceConflictError(f"Referral {referral.id} was claimed concurrently")

        if referrer_bonus:
            await ledger.apply_credit(db, referrer_id, referrer_bonus, TransactionType.BONUS, "Referral reward", now=current)
        if welcome_bonus:
            await ledger.apply_credit(db, referred_id, welcome_bonus, TransactionType.BONUS, "Welcome bonus", now=current)

        refreshed = await db.execute(
            select(Referral).where(Referral.id == referral.id).execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    referral = await run_atomic(db, _operation)
    if referral is None:
        logger.info("referral_completion_noop referrer=%s referred=%s", referrer_id, referred_id)
        return None
    logger.info(
        "referral_completed referral=%s referrer=%s referred=%s bonus=%s welcome=%s",
        referral.id,
        referrer_id,
        referred_id,
        referrer_bonus,
        welcome_bonus,
    )
    return _referral_payload(referral)


async def get_referral_stats(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    result = await db.execute(
        select(
            Referral.status,
            func.count(Referral.id),
            func.coalesce(func.sum(Referral.credits_earned), 0),
        )
        .where(Referral.referrer_user_id == user_id)
        .group_by(Referral.status)
    )
    stats = {"user_id": user_id, "pending": 0, "completed": 0, "credits_earned": 0}
    for status, count, earned in result.all():
        if status in ("pending", "completed"):
            stats[status] = int(count or 0)
        stats["credits_earned"] += int(earned or 0)
    return stats
