"""Moderation deny-list lookups and admin mutations."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.block_entry import BlockEntry
from models.user import User
from services.identity import AuthenticatedRequester, RequesterIdentity, normalize_email

logger = logging.getLogger(__name__)


async def is_blocked(
    identity: Optional[RequesterIdentity],
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    session_id: Optional[str] = None,
) -> bool:
    """
    True when any active entry matches the account id, email, or session id.

    Storage failures fail open and return False.
    """
    conditions = []
    if isinstance(identity, AuthenticatedRequester):
        conditions.append(BlockEntry.user_id == identity.account_id)
        email = email or identity.email
    email = normalize_email(email)
    if email:
        conditions.append(BlockEntry.email == email)
    if session_id:
        conditions.append(BlockEntry.session_id == session_id)
    if not conditions:
        return False

    try:
        result = await db.execute(
            select(BlockEntry.id)
            .where(BlockEntry.is_active.is_(True), or_(*conditions))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
    except SQLAlchemyError:
        logger.exception("Block list lookup failed; allowing request")
        try:
            await db.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after failed block list lookup also failed")
        return False


def _serialize(entry: BlockEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "email": entry.email,
        "session_id": entry.session_id,
        "reason": entry.reason,
        "is_active": bool(entry.is_active),
        "blocked_by": entry.blocked_by,
        "blocked_at": entry.blocked_at.isoformat() if entry.blocked_at else None,
        "deactivated_at": entry.deactivated_at.isoformat() if entry.deactivated_at else None,
    }


async def block_account(*, user_id: str, admin_id: str, db: AsyncSession, reason: Optional[str] = None) -> Dict[str, Any]:
    user_result = await db.execute(select(User.id).where(User.id == user_id))
    if not user_result.scalar_one_or_none():
        raise HTTPException(status_code=404, detail="User not found")

    existing = await db.execute(
        select(BlockEntry.id).where(BlockEntry.user_id == user_id, BlockEntry.is_active.is_(True)).limit(1)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="User is already blocked")

    entry = BlockEntry(user_id=user_id, reason=reason, blocked_by=admin_id, is_active=True)
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    logger.info("Admin %s blocked account %s", admin_id, user_id)
    return _serialize(entry)


async def block_identifiers(
    *,
    admin_id: str,
    db: AsyncSession,
    email: Optional[str] = None,
    session_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    email = normalize_email(email)
    session_id = (session_id or "").strip() or None
    if not email and not session_id:
        raise HTTPException(status_code=422, detail="email or session_id is required")

    entry = BlockEntry(email=email, session_id=session_id, reason=reason, blocked_by=admin_id, is_active=True)
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    logger.info("Admin %s added block entry %s", admin_id, entry.id)
    return _serialize(entry)


async def unblock_account(*, user_id: str, admin_id: str, db: AsyncSession) -> int:
    """Deactivate every active entry for an account; entries are kept for audit."""
    result = await db.execute(
        select(BlockEntry).where(BlockEntry.user_id == user_id, BlockEntry.is_active.is_(True))
    )
    entries = result.scalars().all()
    if not entries:
        raise HTTPException(status_code=404, detail="User is not blocked")
    now = datetime.now(timezone.utc)
    for entry in entries:
        entry.is_active = False
        entry.deactivated_at = now
        entry.deactivated_by = admin_id
    await db.commit()
    logger.info("Admin %s unblocked account %s", admin_id, user_id)
    return len(entries)


async def list_active_blocks(db: AsyncSession, *, limit: int = 100) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(BlockEntry)
        .where(BlockEntry.is_active.is_(True))
        .order_by(BlockEntry.blocked_at.desc())
        .limit(max(1, min(int(limit), 500)))
    )
    return [_serialize(entry) for entry in result.scalars().all()]
