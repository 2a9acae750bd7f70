"""Wallet model holding the three credit pools of a user."""

import enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    MAX = "max"


class Wallet(Base):
    """Per-user credit balance. Mutated only by the balance engine."""

    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("daily_credits >= 0", name="ck_wallets_daily_credits_non_negative"),
        CheckConstraint("subscription_credits >= 0", name="ck_wallets_subscription_credits_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_wallets_bonus_credits_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)

    daily_credits = Column(Integer, nullable=False, default=0)
    daily_credits_reset_at = Column(DateTime(timezone=True), nullable=True)
    subscription_credits = Column(Integer, nullable=False, default=0)
    subscription_credits_reset_at = Column(DateTime(timezone=True), nullable=True)
    bonus_credits = Column(Integer, nullable=False, default=0)

    subscription_tier = Column(String, nullable=False, default=SubscriptionTier.FREE.value)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    subscription_id = Column(String, nullable=True, index=True)

    # Referral counters; referral_month_key is the YYYY-MM the monthly counter belongs to
    referral_credits_this_month = Column(Integer, nullable=False, default=0)
    referral_month_key = Column(String, nullable=True)
    total_referral_credits = Column(Integer, nullable=False, default=0)
    total_referrals = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="wallet")

    @property
    def total_credits(self) -> int:
        return int(self.daily_credits or 0) + int(self.subscription_credits or 0) + int(self.bonus_credits or 0)
