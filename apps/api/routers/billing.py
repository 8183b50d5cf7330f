"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.error_mapping import to_http_exception
from routers.rate_limit import admin_throttle
from services import ledger
from services.errors import CreditEngineError
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditGrantRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=100000)
    kind: Literal["bonus", "purchase", "refund"] = "bonus"
    reason: Optional[str] = None
    external_ref: Optional[str] = None


class CreditDeductRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=100000)
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=100000)
    external_ref: str
    reason: Optional[str] = None


@router.get("/credits")
async def credits_summary(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ensure_user(db, user_id)
        return await ledger.get_credit_summary(db, user_id)
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/transactions")
async def transaction_history(
    user_id: str = Query(...),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_transactions(db, user_id, limit=limit, offset=offset)


@router.post("/grant")
async def grant_credits(
    request: CreditGrantRequest,
    _throttle: None = Depends(admin_throttle("billing_grant")),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ensure_user(db, request.user_id)
        balance_after = await ledger.credit(
            db,
            request.user_id,
            request.amount,
            request.kind,
            request.reason or "Admin credit grant",
            request.external_ref,
        )
    except (CreditEngineError, ValueError) as exc:
        raise to_http_exception(exc) from exc
    logger.info("admin_grant user=%s kind=%s amount=%s", request.user_id, request.kind, request.amount)
    return {"ok": True, "credits_added": request.amount, "balance_after": balance_after}


@router.post("/deduct")
async def deduct_credits(
    request: CreditDeductRequest,
    _throttle: None = Depends(admin_throttle("billing_deduct")),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ensure_user(db, request.user_id)
        balance_after = await ledger.debit(db, request.user_id, request.amount, request.reason or "Admin deduction")
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc
    return {"ok": True, "credits_deducted": request.amount, "balance_after": balance_after}


@router.post("/refund")
async def refund_credits(
    request: RefundRequest,
    _throttle: None = Depends(admin_throttle("billing_refund")),
    db: AsyncSession = Depends(get_db),
):
    if not request.external_ref.strip():
        raise HTTPException(status_code=422, detail="external_ref is required for refunds.")
    try:
        await ensure_user(db, request.user_id)
        balance_after = await ledger.refund(
            db,
            request.user_id,
            request.amount,
            request.external_ref,
            request.reason or "Admin refund",
        )
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc
    return {"ok": True, "balance_after": balance_after}
