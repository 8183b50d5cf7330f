"""User lookup helpers shared by routers."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.atomic import run_atomic
from services.rate_limiter import TIERS


async def ensure_user(
    db: AsyncSession,
    user_id: str,
    *,
    email: Optional[str] = None,
    tier: Optional[str] = None,
) -> User:
    """Return the user, creating a placeholder account if it does not exist yet."""

    async def _operation() -> User:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user:
            return user

        user = User(
            id=user_id,
            email=email or f"{user_id}@local.invalid",
            tier=tier if tier in TIERS else "free",
        )
        db.add(user)
        await db.flush()
        return user

    return await run_atomic(db, _operation)
