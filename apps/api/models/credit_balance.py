"""CreditBalance model: one spendable balance row per user."""

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Live balance; mutated only through services.ledger."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("paid_credits >= 0", name="ck_credit_balances_paid_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_credit_balances_bonus_non_negative"),
        CheckConstraint("free_credits_used_today >= 0", name="ck_credit_balances_free_used_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    paid_credits = Column(Integer, nullable=False, default=0)
    bonus_credits = Column(Integer, nullable=False, default=0)
    free_credits_used_today = Column(Integer, nullable=False, default=0)
    last_free_reset = Column(Date, nullable=False)
    # Optimistic concurrency token, bumped by every mutation.
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credit_balance")

    @property
    def total(self) -> int:
        return int(self.paid_credits or 0) + int(self.bonus_credits or 0)
