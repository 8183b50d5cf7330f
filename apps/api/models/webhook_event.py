"""WebhookEvent model: idempotency anchor for payment events."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """One row per external event id; the unique constraint is the dedupe primitive."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_event_id = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    amount_minor = Column(Integer, nullable=True)
    credits = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=True)
    error_message = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
