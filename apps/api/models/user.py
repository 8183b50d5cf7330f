"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account that owns a credit balance."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    tier = Column(String, nullable=False, default="free")
    referral_code = Column(String, unique=True, nullable=True, default=lambda: uuid.uuid4().hex[:8])
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_balance = relationship(
        "CreditBalance", back_populates="user", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    credit_transactions = relationship(
        "CreditTransaction", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    usage_records = relationship("UsageRecord", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    referrals_sent = relationship(
        "Referral",
        back_populates="referrer",
        foreign_keys="Referral.referrer_user_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
