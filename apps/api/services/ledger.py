"""Credit ledger: the only writer of credit balances and credit transactions.

Every mutation is an optimistic compare-and-swap on ``credit_balances.version``
followed by one appended ``credit_transactions`` row, executed inside
``run_atomic`` so concurrent calls for the same user serialize without locks.

The ``apply_*`` helpers run inside a caller-owned unit of work (no commit) so
orchestrators can compose them with other row mutations; ``credit``, ``debit``
and ``refund`` are the standalone, self-committing entry points.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_transaction import CreditTransaction, TransactionType
from models.user import User
from services.atomic import run_atomic
from services.errors import InsufficientCreditsError, InvalidAmountError, PersistenceConflictError, UserNotFoundError

logger = logging.getLogger(__name__)

CREDIT_KINDS = (TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND)


def _utcnow(now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        return current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone.utc)


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return amount


def _coerce_kind(kind: Any) -> TransactionType:
    try:
        resolved = TransactionType(kind)
    except ValueError:
        raise ValueError(f"Unsupported credit kind: {kind!r}") from None
    if resolved not in CREDIT_KINDS:
        raise ValueError(f"Unsupported credit kind: {kind!r}")
    return resolved


async def _load_balance(db: AsyncSession, user_id: str) -> Optional[CreditBalance]:
    result = await db.execute(
        select(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_balance(db: AsyncSession, user_id: str, today: Optional[date] = None) -> CreditBalance:
    """Load the balance row, creating a zeroed one first if absent.

    Also rolls the daily free-usage counter over when ``last_free_reset`` is in
    the past. Must run inside a unit of work; a concurrent insert of the same
    row surfaces as an ``IntegrityError`` and is retried by ``run_atomic``.
    """
    current_day = today or _utcnow().date()
    balance = await _load_balance(db, user_id)
    if balance is None:
        if await db.get(User, user_id) is None:
            raise UserNotFoundError(user_id)
        balance = CreditBalance(
            user_id=user_id,
            paid_credits=0,
            bonus_credits=0,
            free_credits_used_today=0,
            last_free_reset=current_day,
            version=0,
        )
        db.add(balance)
        await db.flush()
        return balance

    if balance.last_free_reset is None or balance.last_free_reset < current_day:
        await db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .where((CreditBalance.last_free_reset.is_(None)) | (CreditBalance.last_free_reset < current_day))
            .values(free_credits_used_today=0, last_free_reset=current_day)
            .execution_options(synchronize_session=False)
        )
        balance = await _load_balance(db, user_id)
    return balance


async def _swap_balance(
    db: AsyncSession,
    balance: CreditBalance,
    *,
    paid_credits: int,
    bonus_credits: int,
    now: datetime,
) -> int:
    """Compare-and-swap the credit fields; returns the new version."""
    if paid_credits < 0 or bonus_credits < 0:
        raise ValueError(f"Credit balance for {balance.user_id} cannot go negative")
    expected_version = int(balance.version or 0)
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == balance.user_id, CreditBalance.version == expected_version)
        .values(
            paid_credits=paid_credits,
            bonus_credits=bonus_credits,
            version=expected_version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PersistenceConflictError(f"Credit balance for {balance.user_id} changed concurrently")
    return expected_version + 1


def _log_transaction(
    db: AsyncSession,
    *,
    user_id: str,
    kind: TransactionType,
    amount: int,
    balance_after: int,
    sequence: int,
    description: Optional[str],
    payment_reference: Optional[str] = None,
    usage_id: Optional[str] = None,
    now: datetime,
) -> CreditTransaction:
    entry = CreditTransaction(
        user_id=user_id,
        type=kind.value,
        amount=int(amount),
        balance_after=int(balance_after),
        sequence=sequence,
        description=description,
        payment_reference=payment_reference,
        usage_id=usage_id,
        created_at=now,
    )
    db.add(entry)
    return entry


async def apply_credit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    kind: Any = TransactionType.BONUS,
    description: Optional[str] = None,
    external_ref: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Add credits inside the current unit of work; returns the new total."""
    amount = _validate_amount(amount)
    resolved_kind = _coerce_kind(kind)
    current = _utcnow(now)
    balance = await ensure_balance(db, user_id, current.date())

    paid = int(balance.paid_credits or 0)
    bonus = int(balance.bonus_credits or 0)
    if resolved_kind == TransactionType.BONUS:
        bonus += amount
    else:
        paid += amount

    sequence = await _swap_balance(db, balance, paid_credits=paid, bonus_credits=bonus, now=current)
    new_total = paid + bonus
    _log_transaction(
        db,
        user_id=user_id,
        kind=resolved_kind,
        amount=amount,
        balance_after=new_total,
        sequence=sequence,
        description=description or f"{resolved_kind.value.capitalize()} credits",
        payment_reference=external_ref,
        now=current,
    )
    return new_total


async def apply_debit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    description: Optional[str] = None,
    *,
    usage_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Spend credits inside the current unit of work, bonus credits first."""
    amount = _validate_amount(amount)
    current = _utcnow(now)
    balance = await ensure_balance(db, user_id, current.date())

    paid = int(balance.paid_credits or 0)
    bonus = int(balance.bonus_credits or 0)
    available = paid + bonus
    if available < amount:
        raise InsufficientCreditsError(required=amount, available=available)

    from_bonus, from_paid = split_debit(bonus, amount)
    sequence = await _swap_balance(
        db,
        balance,
        paid_credits=paid - from_paid,
        bonus_credits=bonus - from_bonus,
        now=current,
    )
    new_total = available - amount
    _log_transaction(
        db,
        user_id=user_id,
        kind=TransactionType.USAGE,
        amount=-amount,
        balance_after=new_total,
        sequence=sequence,
        description=description or "Credit usage",
        usage_id=usage_id,
        now=current,
    )
    return new_total


def split_debit(bonus_credits: int, amount: int) -> Tuple[int, int]:
    """Return (taken_from_bonus, taken_from_paid) for a debit of ``amount``."""
    from_bonus = min(max(int(bonus_credits), 0), amount)
    return from_bonus, amount - from_bonus


async def apply_refund(
    db: AsyncSession,
    user_id: str,
    amount: int,
    external_ref: Optional[str] = None,
    description: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Remove refunded paid credits, clamped at zero; bonus credits are untouched."""
    amount = _validate_amount(amount)
    current = _utcnow(now)
    balance = await ensure_balance(db, user_id, current.date())

    paid = int(balance.paid_credits or 0)
    bonus = int(balance.bonus_credits or 0)
    removed = min(paid, amount)
    sequence = await _swap_balance(db, balance, paid_credits=paid - removed, bonus_credits=bonus, now=current)
    new_total = paid - removed + bonus

    text = description or "Refund processed"
    if removed != amount:
        text = f"{text} (requested {amount}, removed {removed})"
    _log_transaction(
        db,
        user_id=user_id,
        kind=TransactionType.REFUND,
        amount=-removed,
        balance_after=new_total,
        sequence=sequence,
        description=text,
        payment_reference=external_ref,
        now=current,
    )
    return new_total


async def credit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    kind: Any = TransactionType.BONUS,
    description: Optional[str] = None,
    external_ref: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Grant credits (purchase/refund -> paid, bonus -> bonus). Returns the new total."""
    _validate_amount(amount)
    resolved_kind = _coerce_kind(kind)
    new_total = await run_atomic(
        db,
        lambda: apply_credit(db, user_id, amount, resolved_kind, description, external_ref, now=now),
    )
    logger.info("ledger_credit user=%s kind=%s amount=%s total=%s", user_id, resolved_kind.value, amount, new_total)
    return new_total


async def debit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    description: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Spend credits, bonus first. Raises ``InsufficientCreditsError`` without mutating."""
    _validate_amount(amount)
    new_total = await run_atomic(db, lambda: apply_debit(db, user_id, amount, description, now=now))
    logger.info("ledger_debit user=%s amount=%s total=%s", user_id, amount, new_total)
    return new_total


async def refund(
    db: AsyncSession,
    user_id: str,
    amount: int,
    external_ref: Optional[str] = None,
    description: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Claw back refunded paid credits, never below zero."""
    _validate_amount(amount)
    new_total = await run_atomic(
        db,
        lambda: apply_refund(db, user_id, amount, external_ref, description, now=now),
    )
    logger.info("ledger_refund user=%s amount=%s total=%s ref=%s", user_id, amount, new_total, external_ref)
    return new_total


def _balance_payload(balance: CreditBalance) -> Dict[str, Any]:
    free_limit = max(int(settings.FREE_DAILY_CREDITS), 0)
    used_today = int(balance.free_credits_used_today or 0)
    return {
        "user_id": balance.user_id,
        "paid_credits": int(balance.paid_credits or 0),
        "bonus_credits": int(balance.bonus_credits or 0),
        "total": balance.total,
        "free_credits_used_today": used_today,
        "free_remaining_today": max(free_limit - used_today, 0),
        "last_free_reset": balance.last_free_reset.isoformat() if balance.last_free_reset else None,
    }


async def get_balance(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    balance = await run_atomic(db, lambda: ensure_balance(db, user_id))
    return _balance_payload(balance)


async def _sum_by_type(db: AsyncSession, user_id: str, kind: TransactionType) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == kind.value,
        )
    )
    return int(result.scalar() or 0)


def _transaction_payload(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "sequence": entry.sequence,
        "description": entry.description,
        "payment_reference": entry.payment_reference,
        "usage_id": entry.usage_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """Newest-first page of a user's transaction history."""
    total_result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)
    )
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.sequence.desc())
        .limit(max(int(limit), 1))
        .offset(max(int(offset), 0))
    )
    return {
        "user_id": user_id,
        "total_count": int(total_result.scalar() or 0),
        "entries": [_transaction_payload(entry) for entry in result.scalars().all()],
    }


async def get_credit_summary(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    summary = await get_balance(db, user_id)
    total_purchased = await _sum_by_type(db, user_id, TransactionType.PURCHASE)
    total_used = abs(await _sum_by_type(db, user_id, TransactionType.USAGE))
    history = await list_transactions(db, user_id, limit=30)
    summary.update(
        {
            "total_available": summary["total"],
            "used_today": summary["free_credits_used_today"],
            "total_purchased": total_purchased,
            "total_used_all_time": total_used,
            "recent_entries": history["entries"],
        }
    )
    return summary
