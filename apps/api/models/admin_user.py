"""Admin user model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
import uuid

from database import Base


class AdminUser(Base):
    """Dashboard operator account."""

    __tablename__ = "admin_users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
