"""Admin authentication and dashboard aggregates."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.admin_user import AdminUser
from models.block_entry import BlockEntry
from models.generation_attempt import GenerationAttempt
from models.paid_credit_balance import PaidCreditBalance
from models.pending_payment import PAYMENT_SUCCESS, PendingPayment
from models.user import User
from services.allocation import remaining_generations
from services.crypto import hash_password, verify_password
from services.payments import format_display_amount

logger = logging.getLogger(__name__)


async def authenticate_admin(username: str, password: str, db: AsyncSession) -> Optional[AdminUser]:
    result = await db.execute(select(AdminUser).where(AdminUser.username == username))
    admin = result.scalar_one_or_none()
    if not admin or not verify_password(password, admin.password_hash):
        logger.warning("Failed admin login for %s", username)
        return None
    return admin


async def upsert_admin(username: str, password: str, db: AsyncSession) -> AdminUser:
    """Create the admin user or reset its password."""
    result = await db.execute(select(AdminUser).where(AdminUser.username == username))
    admin = result.scalar_one_or_none()
    if admin:
        admin.password_hash = hash_password(password)
    else:
        admin = AdminUser(username=username, password_hash=hash_password(password))
        db.add(admin)
    await db.commit()
    await db.refresh(admin)
    return admin


async def list_users_with_usage(db: AsyncSession, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = max(1, min(int(limit), 200))

    generation_count = (
        select(func.count(GenerationAttempt.id))
        .where(GenerationAttempt.user_id == User.id)
        .correlate(User)
        .scalar_subquery()
    )
    is_blocked = (
        select(BlockEntry.id)
        .where(BlockEntry.user_id == User.id, BlockEntry.is_active.is_(True))
        .correlate(User)
        .exists()
    )
    paid_half_units = (
        select(PaidCreditBalance.balance_half_units)
        .where(PaidCreditBalance.user_id == User.id)
        .correlate(User)
        .scalar_subquery()
    )

    result = await db.execute(
        select(
            User,
            generation_count.label("generation_count"),
            is_blocked.label("is_blocked"),
            paid_half_units.label("paid_half_units"),
        )
        .order_by(User.created_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    rows = result.all()
    total = int((await db.execute(select(func.count(User.id)))).scalar() or 0)

    return {
        "users": [
            {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "created_at": user.created_at.isoformat() if user.created_at else None,
                "generation_count": int(count or 0),
                "is_blocked": bool(blocked),
                "paid_credits": remaining_generations(0, int(half_units or 0)),
            }
            for user, count, blocked, half_units in rows
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


async def get_dashboard_stats(db: AsyncSession) -> Dict[str, Any]:
    since = datetime.now(timezone.utc) - timedelta(days=7)

    total_generations = (await db.execute(select(func.count(GenerationAttempt.id)))).scalar() or 0
    recent_generations = (
        await db.execute(select(func.count(GenerationAttempt.id)).where(GenerationAttempt.created_at >= since))
    ).scalar() or 0
    total_users = (await db.execute(select(func.count(User.id)))).scalar() or 0
    blocked = (
        await db.execute(select(func.count(BlockEntry.id)).where(BlockEntry.is_active.is_(True)))
    ).scalar() or 0

    by_status_rows = await db.execute(
        select(GenerationAttempt.status, func.count(GenerationAttempt.id)).group_by(GenerationAttempt.status)
    )
    by_pool_rows = await db.execute(
        select(GenerationAttempt.funding_pool, func.count(GenerationAttempt.id)).group_by(GenerationAttempt.funding_pool)
    )
    revenue_rows = await db.execute(
        select(PendingPayment.currency, func.count(PendingPayment.id), func.sum(PendingPayment.amount))
        .where(PendingPayment.status == PAYMENT_SUCCESS)
        .group_by(PendingPayment.currency)
    )
    unlinked = (
        await db.execute(
            select(func.count(PendingPayment.id)).where(
                PendingPayment.status == PAYMENT_SUCCESS,
                PendingPayment.user_id.is_(None),
            )
        )
    ).scalar() or 0

    return {
        "total_generations": int(total_generations),
        "recent_generations": int(recent_generations),
        "total_users": int(total_users),
        "blocked_users": int(blocked),
        "generations_by_status": {status: int(count) for status, count in by_status_rows.all()},
        "generations_by_pool": {pool: int(count) for pool, count in by_pool_rows.all()},
        "revenue": [
            {
                "currency": currency,
                "payments": int(count),
                "amount": int(amount or 0),
                "display_amount": format_display_amount(int(amount or 0), currency),
            }
            for currency, count, amount in revenue_rows.all()
        ],
        "unlinked_successful_payments": int(unlinked),
    }
