"""CreditTransaction model: append-only audit trail of balance mutations."""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"
    REFUND = "refund"


class CreditTransaction(Base):
    """Immutable credit transaction. Never updated after insert."""

    __tablename__ = "credit_transactions"
    __table_args__ = (UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    # Balance version produced by this mutation; orders a user's history exactly.
    sequence = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True, index=True)
    usage_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
