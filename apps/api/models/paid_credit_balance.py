"""PaidCreditBalance model: purchased generation units per account."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class PaidCreditBalance(Base):
    """Paid balance in half-units. Only ever mutated with relative updates."""

    __tablename__ = "paid_credit_balances"
    __table_args__ = (
        CheckConstraint("balance_half_units >= 0", name="ck_paid_credit_balances_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    balance_half_units = Column(Integer, nullable=False, default=0)
    last_updated = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="credit_balance")
