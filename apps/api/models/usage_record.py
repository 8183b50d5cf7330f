"""UsageRecord model: one admitted, billed generation job."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UsageRecord(Base):
    """Admission record created by services.usage.consume_for_usage."""

    __tablename__ = "usage_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    resource_id = Column(String, nullable=False, index=True)
    tier = Column(String, nullable=False)
    credits_charged = Column(Integer, nullable=False, default=0)
    theme_ids = Column(JSON, nullable=True)
    session_id = Column(String, nullable=True, index=True)
    metadata_json = Column(JSON, nullable=True)
    # pending | processing | completed | failed
    status = Column(String, nullable=False, default="pending", index=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="usage_records")
