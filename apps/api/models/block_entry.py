"""BlockEntry model for the moderation deny-list."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from database import Base


class BlockEntry(Base):
    """Soft-deletable block matching an account id, email, or anonymous session id."""

    __tablename__ = "block_entries"
    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR email IS NOT NULL OR session_id IS NOT NULL",
            name="ck_block_entries_identifier",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    email = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=True, index=True)
    reason = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    blocked_by = Column(String, nullable=False)
    blocked_at = Column(DateTime(timezone=True), server_default=func.now())
    deactivated_by = Column(String, nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
