"""Payment gateway webhook router."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import require_webhook_secret, settings
from database import get_db
from routers.rate_limit import admin_throttle, webhook_throttle
from services.errors import PaymentEventFailedError
from services.payments import apply_event, link_customer, list_failed_events

router = APIRouter()
logger = logging.getLogger(__name__)


def _event_amount(event_type: str, obj: Dict[str, Any]) -> int:
    if event_type == "checkout.session.completed":
        return int(obj.get("amount_total") or 0)
    if event_type == "charge.refunded":
        return int(obj.get("amount_refunded") or obj.get("amount") or 0)
    return int(obj.get("amount") or obj.get("amount_total") or 0)


def _extract_event(event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    user_id: Optional[str] = metadata.get("user_id") or obj.get("client_reference_id")
    last_error = obj.get("last_payment_error") or {}
    return {
        "external_event_id": str(event.get("id") or ""),
        "event_type": event_type,
        "user_id": user_id,
        "customer_id": obj.get("customer"),
        "amount_minor": _event_amount(event_type, obj),
        "charged_amount_minor": int(obj.get("amount") or 0) if event_type == "charge.refunded" else None,
        "payment_reference": obj.get("payment_intent") or obj.get("id"),
        "metadata": dict(metadata),
        "error_code": last_error.get("code"),
        "error_message": last_error.get("message"),
    }


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    _throttle: None = Depends(webhook_throttle("webhook_stripe")),
    db: AsyncSession = Depends(get_db),
):
    if not settings.BILLING_WEBHOOKS_ENABLED:
        raise HTTPException(status_code=503, detail="Billing webhooks are disabled.")
    try:
        secret = require_webhook_secret()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header.")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected webhook with invalid signature: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid webhook signature.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid webhook payload.") from exc

    fields = _extract_event(json.loads(payload))
    if not fields["external_event_id"] or not fields["event_type"]:
        raise HTTPException(status_code=400, detail="Webhook event is missing id or type.")

    if fields["user_id"] and fields["customer_id"]:
        await link_customer(db, fields["user_id"], fields["customer_id"])

    try:
        result = await apply_event(
            db,
            fields["external_event_id"],
            fields["event_type"],
            fields["user_id"],
            fields["amount_minor"],
            payment_reference=fields["payment_reference"],
            customer_id=fields["customer_id"],
            metadata=fields["metadata"],
            error_code=fields["error_code"],
            error_message=fields["error_message"],
            charged_amount_minor=fields["charged_amount_minor"],
        )
    except PaymentEventFailedError as exc:
        raise HTTPException(status_code=500, detail="Event processing failed") from exc

    return {
        "received": True,
        "applied": result["applied"],
        "duplicate": result["duplicate"],
        "credits": result.get("credits", 0),
    }


@router.get("/events/failed")
async def failed_events(
    limit: int = Query(default=100, ge=1, le=500),
    _throttle: None = Depends(admin_throttle("webhook_failed_events")),
    db: AsyncSession = Depends(get_db),
):
    events = await list_failed_events(db, limit=limit)
    return {"count": len(events), "events": events}
