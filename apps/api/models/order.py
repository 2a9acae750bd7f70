"""Order model: idempotency boundary with the payment provider."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Order(Base):
    """Completed provider checkout; one row per provider session."""

    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    package_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String, nullable=False, default="usd")
    credits = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="completed")  # pending, completed, failed
    provider_session_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="orders")
