"""Referral router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.error_mapping import to_http_exception
from services.errors import CreditEngineError
from services.referrals import complete_referral, create_referral, get_referral_stats
from services.users import ensure_user

router = APIRouter()


class CreateReferralRequest(BaseModel):
    referrer_user_id: str
    referred_email: str


class CompleteReferralRequest(BaseModel):
    referrer_user_id: str
    referred_user_id: str


@router.post("")
async def share_referral(request: CreateReferralRequest, db: AsyncSession = Depends(get_db)):
    try:
        await ensure_user(db, request.referrer_user_id)
        return await create_referral(db, request.referrer_user_id, request.referred_email)
    except (CreditEngineError, ValueError) as exc:
        raise to_http_exception(exc) from exc


@router.post("/complete")
async def finish_referral(request: CompleteReferralRequest, db: AsyncSession = Depends(get_db)):
    try:
        await ensure_user(db, request.referrer_user_id)
        await ensure_user(db, request.referred_user_id)
        referral = await complete_referral(db, request.referrer_user_id, request.referred_user_id)
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc
    return {"completed": referral is not None, "referral": referral}


@router.get("/stats")
async def referral_stats(user_id: str = Query(...), db: AsyncSession = Depends(get_db)):
    return await get_referral_stats(db, user_id)
