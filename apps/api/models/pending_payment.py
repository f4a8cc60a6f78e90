"""PendingPayment model for processor checkouts."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PAYMENT_PENDING = "pending"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"


class PendingPayment(Base):
    """One checkout attempt, reconciled against processor webhooks."""

    __tablename__ = "pending_payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    processor_reference = Column(String, nullable=False, unique=True, index=True)
    # Null when the payer checked out before creating an account.
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    payer_email = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False)  # smallest currency unit
    currency = Column(String, nullable=False, default="KES")
    half_units = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PAYMENT_PENDING, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    credited_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="payments")
