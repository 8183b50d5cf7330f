"""Usage rate limiter with calendar-aligned hour/day/month windows.

Counters are reset lazily: whenever a (identifier, resource) pair is checked,
any window whose boundary has been crossed since its stored reset marker is
zeroed before limits are evaluated. There is no background scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.rate_limit_config import RateLimitConfig
from models.rate_tracking import RateTracking
from services.atomic import run_atomic
from services.errors import InvalidConfigurationError, PersistenceConflictError

logger = logging.getLogger(__name__)

TIERS = ("anonymous", "free", "paid", "premium")

REASON_HOURLY = "hourly limit exceeded"
REASON_DAILY = "daily limit exceeded"
REASON_MONTHLY = "monthly limit exceeded"
REASON_COOLDOWN = "cooldown active"


@dataclass(frozen=True)
class RateLimits:
    hourly_limit: int
    daily_limit: int
    monthly_limit: Optional[int] = None
    cooldown_seconds: int = 0
    source: str = "default"


TIER_DEFAULTS: Dict[str, RateLimits] = {
    "anonymous": RateLimits(hourly_limit=3, daily_limit=9),
    "free": RateLimits(hourly_limit=9, daily_limit=25),
    "paid": RateLimits(hourly_limit=100, daily_limit=300),
    "premium": RateLimits(hourly_limit=1000, daily_limit=3000),
}


@dataclass
class WindowCounts:
    hourly: int
    daily: int
    monthly: int
    hour_start: datetime
    day_start: date
    month_start: date
    reset_needed: bool = False


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str]
    window: Optional[str]
    hourly_remaining: int
    daily_remaining: int
    monthly_remaining: Optional[int]
    cooldown_seconds: int
    hourly_reset_at: datetime
    daily_reset_at: datetime
    monthly_reset_at: datetime
    cooldown_until: Optional[datetime] = None
    limits: RateLimits = field(default_factory=lambda: TIER_DEFAULTS["anonymous"])

    @property
    def reset_at(self) -> Optional[datetime]:
        """When the window that rejected this check opens again."""
        return {
            "hourly": self.hourly_reset_at,
            "daily": self.daily_reset_at,
            "monthly": self.monthly_reset_at,
            "cooldown": self.cooldown_until,
        }.get(self.window or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "window": self.window,
            "hourly_remaining": self.hourly_remaining,
            "daily_remaining": self.daily_remaining,
            "monthly_remaining": self.monthly_remaining,
            "cooldown_seconds": self.cooldown_seconds,
            "limits": {
                "hourly": self.limits.hourly_limit,
                "daily": self.limits.daily_limit,
                "monthly": self.limits.monthly_limit,
                "source": self.limits.source,
            },
            "reset_times": {
                "hourly_reset": self.hourly_reset_at.isoformat(),
                "daily_reset": self.daily_reset_at.isoformat(),
                "monthly_reset": self.monthly_reset_at.isoformat(),
            },
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow(now: Optional[datetime] = None) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def month_start(day: date) -> date:
    return day.replace(day=1)


def _next_month(day: date) -> date:
    first = month_start(day)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def window_reset_times(now: datetime) -> Tuple[datetime, datetime, datetime]:
    """Next top of hour, next midnight and first of next month (UTC)."""
    current = _utcnow(now)
    return (
        hour_start(current) + timedelta(hours=1),
        _midnight(current.date() + timedelta(days=1)),
        _midnight(_next_month(current.date())),
    )


def effective_counts(tracking: RateTracking, now: datetime) -> WindowCounts:
    """Counter values after applying any pending lazy window resets."""
    current = _utcnow(now)
    current_hour = hour_start(current)
    current_day = current.date()
    current_month = month_start(current_day)

    hourly = int(tracking.hourly_count or 0)
    daily = int(tracking.daily_count or 0)
    monthly = int(tracking.monthly_count or 0)
    reset_needed = False

    stored_hour = _as_utc(tracking.last_hourly_reset)
    if stored_hour is None or stored_hour < current_hour:
        hourly = 0
        reset_needed = True
    if tracking.last_daily_reset is None or tracking.last_daily_reset < current_day:
        daily = 0
        reset_needed = True
    if tracking.last_monthly_reset is None or tracking.last_monthly_reset < current_month:
        monthly = 0
        reset_needed = True

    return WindowCounts(
        hourly=hourly,
        daily=daily,
        monthly=monthly,
        hour_start=current_hour,
        day_start=current_day,
        month_start=current_month,
        reset_needed=reset_needed,
    )


def evaluate(
    limits: RateLimits,
    counts: WindowCounts,
    last_used_at: Optional[datetime],
    now: datetime,
) -> RateLimitDecision:
    """Apply hourly, daily, monthly and cooldown rules in that order."""
    current = _utcnow(now)
    hourly_reset, daily_reset, monthly_reset = window_reset_times(current)
    monthly_remaining = None
    if limits.monthly_limit is not None:
        monthly_remaining = max(limits.monthly_limit - counts.monthly, 0)

    cooldown_until = None
    last_used = _as_utc(last_used_at)
    if limits.cooldown_seconds > 0 and last_used is not None:
        cooldown_until = last_used + timedelta(seconds=limits.cooldown_seconds)

    reason = None
    window = None
    if counts.hourly >= limits.hourly_limit:
        reason, window = REASON_HOURLY, "hourly"
    elif counts.daily >= limits.daily_limit:
        reason, window = REASON_DAILY, "daily"
    elif limits.monthly_limit is not None and counts.monthly >= limits.monthly_limit:
        reason, window = REASON_MONTHLY, "monthly"
    elif cooldown_until is not None and current < cooldown_until:
        reason, window = REASON_COOLDOWN, "cooldown"

    return RateLimitDecision(
        allowed=reason is None,
        reason=reason,
        window=window,
        hourly_remaining=max(limits.hourly_limit - counts.hourly, 0),
        daily_remaining=max(limits.daily_limit - counts.daily, 0),
        monthly_remaining=monthly_remaining,
        cooldown_seconds=limits.cooldown_seconds,
        hourly_reset_at=hourly_reset,
        daily_reset_at=daily_reset,
        monthly_reset_at=monthly_reset,
        cooldown_until=cooldown_until,
        limits=limits,
    )


async def get_rate_limits(db: AsyncSession, resource_id: str, tier: str) -> RateLimits:
    """Administered limits for (resource, tier), else the tier defaults."""
    result = await db.execute(
        select(RateLimitConfig).where(
            RateLimitConfig.resource_id == resource_id,
            RateLimitConfig.tier == tier,
            RateLimitConfig.enabled.is_(True),
        )
    )
    config = result.scalar_one_or_none()
    if config is None:
        return TIER_DEFAULTS.get(tier, TIER_DEFAULTS["anonymous"])
    return RateLimits(
        hourly_limit=int(config.hourly_limit),
        daily_limit=int(config.daily_limit),
        monthly_limit=int(config.monthly_limit) if config.monthly_limit is not None else None,
        cooldown_seconds=max(int(config.cooldown_seconds or 0), 0),
        source="config",
    )


async def load_tracking(
    db: AsyncSession,
    user_identifier: str,
    resource_id: str,
    now: datetime,
) -> RateTracking:
    """Fetch the counter row, lazily creating it zeroed at the current boundaries."""
    result = await db.execute(
        select(RateTracking)
        .where(RateTracking.user_identifier == user_identifier, RateTracking.resource_id == resource_id)
        .execution_options(populate_existing=True)
    )
    tracking = result.scalar_one_or_none()
    if tracking is not None:
        return tracking

    current = _utcnow(now)
    tracking = RateTracking(
        user_identifier=user_identifier,
        resource_id=resource_id,
        hourly_count=0,
        daily_count=0,
        monthly_count=0,
        last_hourly_reset=hour_start(current),
        last_daily_reset=current.date(),
        last_monthly_reset=month_start(current.date()),
        last_used_at=None,
        version=0,
    )
    db.add(tracking)
    await db.flush()
    return tracking


async def _swap_tracking(
    db: AsyncSession,
    tracking: RateTracking,
    counts: WindowCounts,
    *,
    increment: int,
    now: datetime,
) -> None:
    expected_version = int(tracking.version or 0)
    values: Dict[str, Any] = {
        "hourly_count": counts.hourly + increment,
        "daily_count": counts.daily + increment,
        "monthly_count": counts.monthly + increment,
        "last_hourly_reset": counts.hour_start,
        "last_daily_reset": counts.day_start,
        "last_monthly_reset": counts.month_start,
        "version": expected_version + 1,
        "updated_at": now,
    }
    if increment:
        values["last_used_at"] = now
    result = await db.execute(
        update(RateTracking)
        .where(RateTracking.id == tracking.id, RateTracking.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PersistenceConflictError(
            f"Rate counter {tracking.user_identifier}/{tracking.resource_id} changed concurrently"
        )


async def apply_check(
    db: AsyncSession,
    user_identifier: str,
    resource_id: str,
    tier: str,
    now: datetime,
) -> Tuple[RateLimitDecision, RateTracking, WindowCounts]:
    """Evaluate limits inside the current unit of work without consuming quota."""
    limits = await get_rate_limits(db, resource_id, tier)
    tracking = await load_tracking(db, user_identifier, resource_id, now)
    counts = effective_counts(tracking, now)
    decision = evaluate(limits, counts, tracking.last_used_at, now)
    return decision, tracking, counts


async def apply_increment(
    db: AsyncSession,
    tracking: RateTracking,
    counts: WindowCounts,
    now: datetime,
    amount: int = 1,
) -> WindowCounts:
    """Record ``amount`` uses against all three windows; conflicts abort the unit."""
    await _swap_tracking(db, tracking, counts, increment=amount, now=_utcnow(now))
    return WindowCounts(
        hourly=counts.hourly + amount,
        daily=counts.daily + amount,
        monthly=counts.monthly + amount,
        hour_start=counts.hour_start,
        day_start=counts.day_start,
        month_start=counts.month_start,
    )


async def check_rate_limit(
    db: AsyncSession,
    user_identifier: str,
    resource_id: str,
    tier: str,
    *,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    """Read-only admission probe; persists only pending window resets."""
    current = _utcnow(now)

    async def _operation() -> RateLimitDecision:
        decision, tracking, counts = await apply_check(db, user_identifier, resource_id, tier, current)
        if counts.reset_needed:
            await _swap_tracking(db, tracking, counts, increment=0, now=current)
        return decision

    decision = await run_atomic(db, _operation)
    if not decision.allowed:
        logger.info(
            "rate_limit_rejected identifier=%s resource=%s tier=%s reason=%s",
            user_identifier,
            resource_id,
            tier,
            decision.reason,
        )
    return decision


async def increment_usage(
    db: AsyncSession,
    user_identifier: str,
    resource_id: str,
    *,
    amount: int = 1,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Count usage consumed outside ``consume_for_usage``."""
    current = _utcnow(now)

    async def _operation() -> WindowCounts:
        tracking = await load_tracking(db, user_identifier, resource_id, current)
        counts = effective_counts(tracking, current)
        return await apply_increment(db, tracking, counts, current, amount=max(int(amount), 1))

    counts = await run_atomic(db, _operation)
    return {"hourly_count": counts.hourly, "daily_count": counts.daily, "monthly_count": counts.monthly}


async def upsert_rate_limit_config(
    db: AsyncSession,
    *,
    resource_id: str,
    tier: str,
    hourly_limit: int,
    daily_limit: int,
    monthly_limit: Optional[int] = None,
    cooldown_seconds: int = 0,
    enabled: bool = True,
) -> Dict[str, Any]:
    if tier not in TIERS:
        raise InvalidConfigurationError(f"Unknown tier {tier!r}; expected one of {', '.join(TIERS)}")
    numbers = [hourly_limit, daily_limit, cooldown_seconds] + ([monthly_limit] if monthly_limit is not None else [])
    if any(int(value) < 0 for value in numbers):
        raise InvalidConfigurationError("Limits and cooldown must be non-negative")

    async def _operation() -> RateLimitConfig:
        result = await db.execute(
            select(RateLimitConfig).where(RateLimitConfig.resource_id == resource_id, RateLimitConfig.tier == tier)
        )
        config = result.scalar_one_or_none()
        if config is None:
            config = RateLimitConfig(resource_id=resource_id, tier=tier)
            db.add(config)
        config.hourly_limit = int(hourly_limit)
        config.daily_limit = int(daily_limit)
        config.monthly_limit = int(monthly_limit) if monthly_limit is not None else None
        config.cooldown_seconds = int(cooldown_seconds)
        config.enabled = bool(enabled)
        await db.flush()
        return config

    config = await run_atomic(db, _operation)
    logger.info("rate_limit_config_saved resource=%s tier=%s", resource_id, tier)
    return {
        "id": config.id,
        "resource_id": config.resource_id,
        "tier": config.tier,
        "hourly_limit": config.hourly_limit,
        "daily_limit": config.daily_limit,
        "monthly_limit": config.monthly_limit,
        "cooldown_seconds": config.cooldown_seconds,
        "enabled": config.enabled,
    }
