"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account known to the entitlement core, keyed by the auth provider's user id."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    # Start of the current authenticated free-allowance window; null until first use.
    free_window_started_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    generation_attempts = relationship("GenerationAttempt", back_populates="user")
    credit_balance = relationship("PaidCreditBalance", back_populates="user", uselist=False)
    payments = relationship("PendingPayment", back_populates="user")
