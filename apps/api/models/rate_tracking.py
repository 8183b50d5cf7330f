"""RateTracking model: calendar-window usage counters per identifier and resource."""

import uuid

from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class RateTracking(Base):
    """Hour/day/month counters, reset lazily when their window boundary is crossed."""

    __tablename__ = "rate_tracking"
    __table_args__ = (
        UniqueConstraint("user_identifier", "resource_id", name="uq_rate_tracking_identifier_resource"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # user id, or IP / session id for anonymous callers
    user_identifier = Column(String, nullable=False, index=True)
    resource_id = Column(String, nullable=False, index=True)
    hourly_count = Column(Integer, nullable=False, default=0)
    daily_count = Column(Integer, nullable=False, default=0)
    monthly_count = Column(Integer, nullable=False, default=0)
    last_hourly_reset = Column(DateTime(timezone=True), nullable=False)
    last_daily_reset = Column(Date, nullable=False)
    last_monthly_reset = Column(Date, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
