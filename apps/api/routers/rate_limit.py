"""Redis-backed request throttling for the admin and webhook HTTP surface.

This guards endpoints against request floods only; per-user generation quotas
are enforced by services.rate_limiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple, Union

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def _evict_expired(now: float) -> None:
    expired = [key for key, (_, reset_at) in _local_counters.items() if reset_at <= now]
    for key in expired:
        del _local_counters[key]


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, float]:
    now = time.time()
    async with _local_lock:
        _evict_expired(now)
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, reset_at - now


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, float]:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
        ttl = await redis_client.ttl(key)
    finally:
        await redis_client.aclose()
    return current <= limit, float(max(ttl, 0))


def throttle(
    prefix: str,
    limit: Union[int, Callable[[], int]],
    window_seconds: int = 3600,
) -> Callable[[Request], None]:
    """Return a FastAPI dependency enforcing a fixed-window per-client request quota."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        resolved_limit = int(limit() if callable(limit) else limit)
        key = f"credits:throttle:{prefix}:{_client_identifier(request)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, resolved_limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis throttle unavailable, using local counters: %s", exc)
            allowed, retry_after = await _consume_local_quota(key, resolved_limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests for {prefix}. Try again later.",
                headers={"Retry-After": str(int(retry_after) or 1)},
            )

    return _dependency


def admin_throttle(prefix: str) -> Callable[[Request], None]:
    return throttle(prefix, lambda: settings.ADMIN_RATE_LIMIT_PER_HOUR)


def webhook_throttle(prefix: str) -> Callable[[Request], None]:
    return throttle(prefix, lambda: settings.WEBHOOK_RATE_LIMIT_PER_HOUR)
