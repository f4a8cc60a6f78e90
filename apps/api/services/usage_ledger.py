"""Usage ledger: durable record of every admitted generation attempt."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.generation_attempt import (
    ATTEMPT_FAILED,
    ATTEMPT_PENDING,
    ATTEMPT_SUCCEEDED,
    CONSUMING_STATUSES,
    GenerationAttempt,
)
from services.allocation import CostClass, FundingPool
from services.credits import refund_credits
from services.errors import StorageUnavailable
from services.identity import AnonymousRequester, RequesterIdentity

logger = logging.getLogger(__name__)


async def count_anonymous_usage(network_address: str, db: AsyncSession) -> int:
    """Pending and succeeded attempts for an address that no account claimed."""
    try:
        result = await db.execute(
            select(func.count(GenerationAttempt.id)).where(
                GenerationAttempt.network_address == network_address,
                GenerationAttempt.user_id.is_(None),
                GenerationAttempt.status.in_(CONSUMING_STATUSES),
            )
        )
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"usage ledger read failed for {network_address}") from exc
    return int(result.scalar() or 0)


async def count_free_usage(user_id: str, db: AsyncSession, *, since: datetime) -> int:
    """Free-allowance slots an account has used inside its current window."""
    try:
        result = await db.execute(
            select(func.count(GenerationAttempt.id)).where(
                GenerationAttempt.user_id == user_id,
                GenerationAttempt.funding_pool == FundingPool.FREE.value,
                GenerationAttempt.status.in_(CONSUMING_STATUSES),
                GenerationAttempt.created_at >= since,
            )
        )
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"usage ledger read failed for {user_id}") from exc
    return int(result.scalar() or 0)


async def record_attempt_start(
    identity: RequesterIdentity,
    db: AsyncSession,
    *,
    cost_class: CostClass,
    funding_pool: FundingPool,
    half_units_reserved: int = 0,
    network_address: Optional[str] = None,
    session_id: Optional[str] = None,
    mode: Optional[str] = None,
    user_agent: Optional[str] = None,
    commit: bool = True,
) -> GenerationAttempt:
    """Write the ``pending`` row before the external call so concurrent admissions see it."""
    if isinstance(identity, AnonymousRequester):
        user_id = None
        network_address = identity.network_address
    else:
        user_id = identity.account_id

    attempt = GenerationAttempt(
        user_id=user_id,
        network_address=network_address,
        session_id=session_id,
        status=ATTEMPT_PENDING,
        cost_class=CostClass(cost_class).value,
        funding_pool=FundingPool(funding_pool).value,
        half_units_reserved=int(half_units_reserved),
        mode=mode,
        user_agent=(user_agent or "")[:512] or None,
        created_at=datetime.now(timezone.utc),
    )
    db.add(attempt)
    await db.flush()
    if commit:
        await db.commit()
    return attempt


async def finish_attempt(
    attempt_id: str,
    db: AsyncSession,
    *,
    outcome: str,
    error_message: Optional[str] = None,
) -> bool:
    """
    Move a pending attempt to a terminal state; returns False if it was already terminal.

    A failed attempt hands back any paid half-units reserved at admission in
    the same transaction. Does not commit.
    """
    if outcome not in (ATTEMPT_SUCCEEDED, ATTEMPT_FAILED):
        raise ValueError(f"Unsupported attempt outcome: {outcome}")

    result = await db.execute(
        update(GenerationAttempt)
        .where(
            GenerationAttempt.id == attempt_id,
            GenerationAttempt.status == ATTEMPT_PENDING,
        )
        .values(
            status=outcome,
            completed_at=datetime.now(timezone.utc),
            error_message=(error_message or "")[:1000] or None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    if outcome == ATTEMPT_FAILED:
        row = await db.execute(
            select(GenerationAttempt.user_id, GenerationAttempt.half_units_reserved).where(
                GenerationAttempt.id == attempt_id
            )
        )
        user_id, reserved = row.one()
        if user_id and reserved:
            await refund_credits(user_id, db, half_units=reserved, commit=False)
    return True


async def record_attempt_end(
    attempt_id: str,
    outcome: str,
    *,
    error_message: Optional[str] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> bool:
    """
    Best-effort completion update in its own session.

    Never raises. Rows left pending are cleaned up by
    ``recover_stalled_attempts``.
    """
    maker = session_maker or async_session_maker
    try:
        async with maker() as db:
            changed = await finish_attempt(attempt_id, db, outcome=outcome, error_message=error_message)
            await db.commit()
            if not changed:
                logger.info("Generation attempt %s was already terminal; %s ignored", attempt_id, outcome)
            return changed
    except Exception:
        logger.exception("Failed to record %s for generation attempt %s", outcome, attempt_id)
        return False


STALLED_ERROR_MESSAGE = "Generation was interrupted before completion."


async def _fail_stalled(db: AsyncSession, cutoff: datetime, *conditions) -> int:
    result = await db.execute(
        select(GenerationAttempt.id).where(
            GenerationAttempt.status == ATTEMPT_PENDING,
            GenerationAttempt.created_at < cutoff,
            *conditions,
        )
    )
    recovered = 0
    for attempt_id in result.scalars().all():
        if await finish_attempt(attempt_id, db, outcome=ATTEMPT_FAILED, error_message=STALLED_ERROR_MESSAGE):
            recovered += 1
    return recovered


def _stalled_cutoff(max_age_minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=max(int(max_age_minutes), 1))


async def recover_requester_attempts(identity: RequesterIdentity, db: AsyncSession, *, max_age_minutes: int = 30) -> int:
    """
    Fail this requester's stale pending attempts inside the caller's transaction.

    Covers completions that were lost while the process kept running. Does not commit.
    """
    if isinstance(identity, AnonymousRequester):
        conditions = (
            GenerationAttempt.network_address == identity.network_address,
            GenerationAttempt.user_id.is_(None),
        )
    else:
        conditions = (GenerationAttempt.user_id == identity.account_id,)
    recovered = await _fail_stalled(db, _stalled_cutoff(max_age_minutes), *conditions)
    if recovered:
        logger.warning("Failed %s stalled generation attempt(s) for %s", recovered, identity.requester_key)
    return recovered


async def recover_stalled_attempts(
    max_age_minutes: int = 30,
    *,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """Fail pending attempts orphaned by restarts so they stop consuming entitlement."""
    maker = session_maker or async_session_maker
    async with maker() as db:
        recovered = await _fail_stalled(db, _stalled_cutoff(max_age_minutes))
        await db.commit()
        return recovered
