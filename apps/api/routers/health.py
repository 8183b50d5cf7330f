"""
Liveness, readiness and dependency probes.
"""

from typing import List, Tuple

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import engine

router = APIRouter()


async def _probe_database() -> Tuple[bool, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return False, f"down: {exc}"
    return True, "up"


async def _probe_redis() -> Tuple[bool, str]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        return False, f"down: {exc}"
    finally:
        await client.aclose()
    return True, "up"


def _missing_billing_settings() -> List[str]:
    if settings.BILLING_WEBHOOKS_ENABLED and not settings.STRIPE_WEBHOOK_SECRET.strip():
        return ["STRIPE_WEBHOOK_SECRET"]
    return []


@router.get("/health")
async def health_check():
    """
    The ledger cannot work without the database, so a database failure is
    "unhealthy". Redis only backs request throttling and degrades the service.
    """
    database_ok, database_state = await _probe_database()
    redis_ok, redis_state = await _probe_redis()

    status = "healthy"
    if not database_ok:
        status = "unhealthy"
    elif not redis_ok:
        status = "degraded"

    return {
        "status": status,
        "api": "up",
        "database": database_state,
        "redis": redis_state,
        "billing_webhooks": "enabled" if settings.BILLING_WEBHOOKS_ENABLED else "disabled",
    }


@router.get("/health/ready")
async def readiness_check():
    missing = _missing_billing_settings()
    database_ok, database_state = await _probe_database()
    if missing or not database_ok:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database_state},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
