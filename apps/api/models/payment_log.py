"""PaymentLog model: audit trail of gateway payment activity."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class PaymentLog(Base):
    """Gateway payment outcome as reported by a webhook."""

    __tablename__ = "payment_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_reference = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    amount_minor = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
