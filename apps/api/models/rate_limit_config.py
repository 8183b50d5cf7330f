"""RateLimitConfig model: administered per-resource, per-tier usage caps."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class RateLimitConfig(Base):
    """Usage thresholds for one (resource, tier) pair."""

    __tablename__ = "rate_limit_configs"
    __table_args__ = (UniqueConstraint("resource_id", "tier", name="uq_rate_limit_configs_resource_tier"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    resource_id = Column(String, nullable=False, index=True)
    # anonymous | free | paid | premium
    tier = Column(String, nullable=False, index=True)
    hourly_limit = Column(Integer, nullable=False, default=3)
    daily_limit = Column(Integer, nullable=False, default=9)
    monthly_limit = Column(Integer, nullable=True)
    cooldown_seconds = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
