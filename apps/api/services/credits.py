"""Paid credit store: purchased generation units per account, in half-units."""

from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.paid_credit_balance import PaidCreditBalance
from services.errors import StorageUnavailable

logger = logging.getLogger(__name__)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    """Return the paid balance in half-units (0 when the account never paid)."""
    try:
        result = await db.execute(
            select(PaidCreditBalance.balance_half_units).where(PaidCreditBalance.user_id == user_id)
        )
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"paid credit balance read failed for {user_id}") from exc
    return int(result.scalar() or 0)


async def _increment(user_id: str, db: AsyncSession, half_units: int) -> bool:
    result = await db.execute(
        update(PaidCreditBalance)
        .where(PaidCreditBalance.user_id == user_id)
        .values(
            balance_half_units=PaidCreditBalance.balance_half_units + half_units,
            last_updated=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def grant_credits(user_id: str, db: AsyncSession, *, half_units: int, commit: bool = True) -> int:
    """
    Add half-units to an account, creating the balance row on first grant.

    Exactly-once crediting per payment is the caller's job (see
    ``services.payments``); this only guarantees the addition is relative.
    """
    amount = int(half_units)
    if amount <= 0:
        raise ValueError("half_units must be greater than 0")

    if not await _increment(user_id, db, amount):
        try:
            async with db.begin_nested():
                db.add(PaidCreditBalance(user_id=user_id, balance_half_units=amount))
        except IntegrityError:
            # A concurrent first grant created the row between our update and insert.
            if not await _increment(user_id, db, amount):
                raise

    if commit:
        await db.commit()
    return await get_credit_balance(user_id, db)


async def consume_credits(user_id: str, db: AsyncSession, *, half_units: int, commit: bool = True) -> bool:
    """
    Atomically debit half-units; returns False instead of going negative.

    The balance check and the decrement are one conditional UPDATE, so
    concurrent consumers can never overdraw the balance.
    """
    amount = int(half_units)
    if amount <= 0:
        raise ValueError("half_units must be greater than 0")

    result = await db.execute(
        update(PaidCreditBalance)
        .where(
            PaidCreditBalance.user_id == user_id,
            PaidCreditBalance.balance_half_units >= amount,
        )
        .values(
            balance_half_units=PaidCreditBalance.balance_half_units - amount,
            last_updated=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    ok = result.rowcount == 1
    if not ok:
        logger.warning("Paid credit debit of %s half-units refused for %s", amount, user_id)
    if commit:
        await db.commit()
    return ok


async def refund_credits(user_id: str, db: AsyncSession, *, half_units: int, commit: bool = True) -> int:
    """Return a reservation taken by a generation that did not succeed."""
    return await grant_credits(user_id, db, half_units=half_units, commit=commit)
