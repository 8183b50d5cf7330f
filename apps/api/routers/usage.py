"""Generation admission router: consume, complete and probe quotas."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.error_mapping import to_http_exception
from routers.rate_limit import admin_throttle
from services import rate_limiter
from services.errors import CreditEngineError
from services.usage import complete_usage, consume_for_usage, get_usage
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)

Tier = Literal["anonymous", "free", "paid", "premium"]


class ConsumeUsageRequest(BaseModel):
    user_id: str
    resource_id: str
    tier: Optional[Tier] = None
    credit_cost: int = Field(default=1, ge=1, le=1000)
    user_identifier: Optional[str] = None
    theme_ids: List[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompleteUsageRequest(BaseModel):
    status: Literal["processing", "completed", "failed"]
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None


class RateLimitConfigRequest(BaseModel):
    resource_id: str
    tier: Tier
    hourly_limit: int = Field(ge=0)
    daily_limit: int = Field(ge=0)
    monthly_limit: Optional[int] = Field(default=None, ge=0)
    cooldown_seconds: int = Field(default=0, ge=0)
    enabled: bool = True


@router.post("/consume")
async def consume(request: ConsumeUsageRequest, db: AsyncSession = Depends(get_db)):
    try:
        user = await ensure_user(db, request.user_id)
        return await consume_for_usage(
            db,
            request.user_id,
            request.resource_id,
            request.tier or user.tier,
            request.credit_cost,
            user_identifier=request.user_identifier,
            theme_ids=request.theme_ids,
            session_id=request.session_id,
            metadata=request.metadata,
        )
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{usage_id}/complete")
async def complete(usage_id: str, request: CompleteUsageRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await complete_usage(
            db,
            usage_id,
            request.status,
            processing_time_ms=request.processing_time_ms,
            error_message=request.error_message,
        )
    except (CreditEngineError, ValueError) as exc:
        raise to_http_exception(exc) from exc


@router.get("/rate-limit")
async def rate_limit_status(
    identifier: str = Query(...),
    resource_id: str = Query(...),
    tier: Tier = Query(default="anonymous"),
    db: AsyncSession = Depends(get_db),
):
    try:
        decision = await rate_limiter.check_rate_limit(db, identifier, resource_id, tier)
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc
    return decision.to_dict()


@router.put("/rate-limit/config")
async def save_rate_limit_config(
    request: RateLimitConfigRequest,
    _throttle: None = Depends(admin_throttle("rate_limit_config")),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await rate_limiter.upsert_rate_limit_config(db, **request.model_dump())
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{usage_id}")
async def usage_detail(usage_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await get_usage(db, usage_id)
    except CreditEngineError as exc:
        raise to_http_exception(exc) from exc
