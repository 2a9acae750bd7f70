"""Referral model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


class Referral(Base):
    """Completed referral. A user can be referred at most once."""

    __tablename__ = "referrals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    referred_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    referrer_credits = Column(Integer, nullable=False, default=0)
    referred_credits = Column(Integer, nullable=False, default=0)
    ip_address = Column(String, nullable=True, index=True)
    user_agent = Column(String, nullable=True)
    status = Column(String, nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
