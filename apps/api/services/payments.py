"""Exactly-once application of payment gateway events to the ledger.

The unique ``webhook_events.external_event_id`` column is the idempotency
anchor: the event row, the ledger mutation and the success mark commit
together, so a duplicate delivery either finds the row or loses the insert
race and is reported as already applied. When the ledger mutation fails the
event is recorded as failed and left for manual reconciliation; it is never
retried automatically.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_transaction import TransactionType
from models.payment_customer import PaymentCustomer
from models.payment_log import PaymentLog
from models.user import User
from models.webhook_event import WebhookEvent
from services import ledger
from services.atomic import run_atomic
from services.errors import (
    InvalidAmountError,
    PaymentEventFailedError,
    PersistenceConflictError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)

# Amounts in minor units (cents) -> credits.
PRICE_TO_CREDITS: Dict[int, int] = {
    499: 10,  # Starter pack
    999: 25,  # Wedding pack
    2499: 75,  # Party pack
}
DISCOUNTED_PRICE_TO_CREDITS: Dict[int, int] = {
    250: 10,
    500: 25,
    1250: 75,
}
FALLBACK_MINOR_UNITS_PER_CREDIT = 50

PURCHASE_EVENT_TYPES = ("purchase", "checkout.session.completed")
REFUND_EVENT_TYPES = ("refund", "charge.refunded")
PAYMENT_LOG_EVENT_TYPES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
}


def credits_for_amount(amount_minor: int) -> int:
    """Map a charged amount to a credit quantity using the fixed price table."""
    amount = int(amount_minor or 0)
    if amount in PRICE_TO_CREDITS:
        return PRICE_TO_CREDITS[amount]
    if amount in DISCOUNTED_PRICE_TO_CREDITS:
        return DISCOUNTED_PRICE_TO_CREDITS[amount]
    if amount <= 0:
        return 0
    logger.warning("Unknown payment amount: %s minor units", amount)
    return amount // FALLBACK_MINOR_UNITS_PER_CREDIT


def credits_for_refund(refunded_minor: int, charged_minor: Optional[int] = None) -> int:
    """Credits to claw back for a refund.

    With the original charge amount known, a partial refund removes the same
    share of the credits that charge bought; otherwise the refunded amount is
    priced like a purchase.
    """
    refunded = int(refunded_minor or 0)
    charged = int(charged_minor or 0)
    if refunded <= 0:
        return 0
    if charged <= 0:
        return credits_for_amount(refunded)
    if refunded >= charged:
        return credits_for_amount(charged)
    return credits_for_amount(charged) * refunded // charged


def _event_payload(event: WebhookEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "external_event_id": event.external_event_id,
        "event_type": event.event_type,
        "user_id": event.user_id,
        "amount_minor": event.amount_minor,
        "credits": event.credits,
        "success": event.success,
        "error_message": event.error_message,
        "processed_at": event.processed_at.isoformat() if event.processed_at else None,
    }


async def _find_event(db: AsyncSession, external_event_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.external_event_id == external_event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_user_id(
    db: AsyncSession,
    user_id: Optional[str],
    customer_id: Optional[str],
) -> Optional[str]:
    if user_id:
        return user_id
    if not customer_id:
        return None
    result = await db.execute(select(PaymentCustomer.user_id).where(PaymentCustomer.customer_id == customer_id))
    return result.scalar_one_or_none()


async def link_customer(db: AsyncSession, user_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
    """Map a gateway customer to a user; an existing mapping is kept as is.

    Returns None when the user is unknown.
    """

    async def _operation() -> Optional[PaymentCustomer]:
        result = await db.execute(select(PaymentCustomer).where(PaymentCustomer.customer_id == customer_id))
        mapping = result.scalar_one_or_none()
        if mapping is None:
            if await db.get(User, user_id) is None:
                return None
            mapping = PaymentCustomer(user_id=user_id, customer_id=customer_id)
            db.add(mapping)
            await db.flush()
        return mapping

    mapping = await run_atomic(db, _operation)
    if mapping is None:
        return None
    return {"user_id": mapping.user_id, "customer_id": mapping.customer_id}


async def apply_event(
    db: AsyncSession,
    external_event_id: str,
    event_type: str,
    user_id: Optional[str],
    amount_minor: Optional[int],
    *,
    payment_reference: Optional[str] = None,
    customer_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    charged_amount_minor: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply one gateway event at most once.

    Returns ``{"applied": False, "duplicate": True}`` when the event id was seen
    before, including when a concurrent delivery of the same id won the insert.
    Raises ``PaymentEventFailedError`` after recording the event as failed when
    the ledger rejects it. ``charged_amount_minor`` is the original charge of a
    refund event and prorates partial refunds.
    """
    if not external_event_id:
        raise ValueError("external_event_id is required")
    current = now or datetime.now(timezone.utc)
    amount = int(amount_minor or 0)
    reference = payment_reference or external_event_id

    async def _operation() -> Dict[str, Any]:
        existing = await _find_event(db, external_event_id)
        if existing is not None:
            return {"applied": False, "duplicate": True, "event": _event_payload(existing)}

        event = WebhookEvent(
            external_event_id=external_event_id,
            event_type=event_type,
            amount_minor=amount,
        )
        db.add(event)
        # A concurrent delivery loses here with an IntegrityError; run_atomic retries
        # and the next attempt sees the winner's row above.
        await db.flush()

        resolved_user = await resolve_user_id(db, user_id, customer_id)
        event.user_id = resolved_user
        credits = 0
        balance_after: Optional[int] = None
        applied = False

        if event_type in PURCHASE_EVENT_TYPES or event_type in REFUND_EVENT_TYPES:
            if not resolved_user or await db.get(User, resolved_user) is None:
                raise UserNotFoundError(resolved_user)
            if event_type in PURCHASE_EVENT_TYPES:
                credits = credits_for_amount(amount)
            else:
                credits = credits_for_refund(amount, charged_amount_minor)
            if credits <= 0:
                raise InvalidAmountError(credits)
            if event_type in PURCHASE_EVENT_TYPES:
                balance_after = await ledger.apply_credit(
                    db,
                    resolved_user,
                    credits,
                    TransactionType.PURCHASE,
                    f"Credit purchase - {reference}",
                    reference,
                    now=current,
                )
            else:
                balance_after = await ledger.apply_refund(
                    db,
                    resolved_user,
                    credits,
                    reference,
                    f"Refund processed - {reference}",
                    now=current,
                )
            applied = True
        elif event_type in PAYMENT_LOG_EVENT_TYPES:
            if resolved_user and await db.get(User, resolved_user) is None:
                resolved_user = None
                event.user_id = None
            db.add(
                PaymentLog(
                    payment_reference=reference,
                    customer_id=customer_id,
                    user_id=resolved_user,
                    amount_minor=amount,
                    status=PAYMENT_LOG_EVENT_TYPES[event_type],
                    event_type=event_type,
                    error_code=error_code,
                    error_message=error_message,
                    metadata_json=metadata or {},
                )
            )
        else:
            logger.info("Unhandled payment event type %s (%s)", event_type, external_event_id)

        event.credits = credits
        event.success = True
        event.processed_at = current
        await db.flush()
        return {
            "applied": applied,
            "duplicate": False,
            "credits": credits,
            "balance_after": balance_after,
            "event": _event_payload(event),
        }

    try:
        result = await run_atomic(db, _operation)
    except Exception as exc:
        winner_payload = await _committed_event_payload(db, external_event_id)
        if winner_payload is None:
            try:
                winner_payload = await _record_failed_event(
                    db, external_event_id, event_type, user_id, amount, str(exc), current
                )
            except PersistenceConflictError:
                winner_payload = await _committed_event_payload(db, external_event_id)
                if winner_payload is None:
                    raise
        if winner_payload is not None:
            # Another delivery of this id committed first; this one lost the insert race.
            logger.warning("payment_event_replayed event=%s type=%s", external_event_id, event_type)
            return {"applied": False, "duplicate": True, "event": winner_payload}
        logger.exception("payment_event_failed event=%s type=%s", external_event_id, event_type)
        raise PaymentEventFailedError(external_event_id, str(exc)) from exc

    if result["duplicate"]:
        logger.warning("payment_event_replayed event=%s type=%s", external_event_id, event_type)
    elif result["applied"]:
        logger.info(
            "payment_event_applied event=%s type=%s user=%s credits=%s",
            external_event_id,
            event_type,
            result["event"]["user_id"],
            result["credits"],
        )
    return result


async def _committed_event_payload(db: AsyncSession, external_event_id: str) -> Optional[Dict[str, Any]]:
    event = await _find_event(db, external_event_id)
    payload = _event_payload(event) if event is not None else None
    await db.rollback()
    return payload


async def _record_failed_event(
    db: AsyncSession,
    external_event_id: str,
    event_type: str,
    user_id: Optional[str],
    amount_minor: int,
    message: str,
    now: datetime,
) -> Optional[Dict[str, Any]]:
    """Store the event as failed; returns the existing event instead if one is already stored."""

    async def _operation() -> Optional[Dict[str, Any]]:
        existing = await _find_event(db, external_event_id)
        if existing is not None:
            return _event_payload(existing)
        db.add(
            WebhookEvent(
                external_event_id=external_event_id,
                event_type=event_type,
                user_id=user_id,
                amount_minor=amount_minor,
                credits=0,
                success=False,
                error_message=message[:1000],
                processed_at=now,
            )
        )
        await db.flush()
        return None

    return await run_atomic(db, _operation)


async def list_failed_events(db: AsyncSession, *, limit: int = 100) -> List[Dict[str, Any]]:
    """Events awaiting manual reconciliation, newest first."""
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.success.is_(False))
        .order_by(WebhookEvent.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return [_event_payload(event) for event in result.scalars().all()]
