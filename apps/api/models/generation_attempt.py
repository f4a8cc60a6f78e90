"""GenerationAttempt model: usage ledger row for one external generation call."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


ATTEMPT_PENDING = "pending"
ATTEMPT_SUCCEEDED = "succeeded"
ATTEMPT_FAILED = "failed"
CONSUMING_STATUSES = (ATTEMPT_PENDING, ATTEMPT_SUCCEEDED)


class GenerationAttempt(Base):
    """
    One admitted generation attempt.

    Rows are written as ``pending`` at admission, before the external call
    starts, and move exactly once to ``succeeded`` or ``failed``.
    """

    __tablename__ = "generation_attempts"
    __table_args__ = (
        Index("ix_generation_attempts_address_status", "network_address", "status"),
        Index("ix_generation_attempts_user_pool_created", "user_id", "funding_pool", "created_at"),
        CheckConstraint(
            "user_id IS NOT NULL OR network_address IS NOT NULL",
            name="ck_generation_attempts_requester",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    network_address = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ATTEMPT_PENDING, index=True)
    cost_class = Column(String, nullable=False, default="full")
    funding_pool = Column(String, nullable=False)
    half_units_reserved = Column(Integer, nullable=False, default=0)
    mode = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="generation_attempts")
