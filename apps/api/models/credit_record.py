"""CreditRecord model: append-only audit trail of balance changes."""

import enum
import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditRecordType(str, enum.Enum):
    SIGNUP_BONUS = "signup_bonus"
    DAILY_LOGIN = "daily_login"
    GENERATION = "generation"
    PURCHASE = "purchase"
    SUBSCRIPTION_RESET = "subscription_reset"
    ADMIN_GRANT = "admin_grant"
    REFERRAL_INVITER = "referral_inviter"
    REFERRAL_INVITEE = "referral_invitee"


class CreditPool(str, enum.Enum):
    DAILY = "daily"
    SUBSCRIPTION = "subscription"
    BONUS = "bonus"
    MIXED = "mixed"


class CreditRecord(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_records"
    __table_args__ = (
        CheckConstraint("balance_after = balance_before + amount", name="ck_credit_records_balance_delta"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    credit_pool = Column(String, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_records")


@event.listens_for(CreditRecord, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Credit record {target.id} is immutable")


@event.listens_for(CreditRecord, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Credit record {target.id} cannot be deleted")
