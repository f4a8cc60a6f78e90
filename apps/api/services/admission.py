"""Admission control: may this requester start a paid external generation?"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.allocation import (
    CostClass,
    FundingPool,
    allocate,
    allocate_anonymous,
    half_units_for,
    remaining_generations,
)
from services.credits import consume_credits, get_credit_balance
from services.errors import StorageUnavailable
from services.identity import AnonymousRequester, AuthenticatedRequester, RequesterIdentity, normalize_email
from services.usage_ledger import (
    count_anonymous_usage,
    count_free_usage,
    record_attempt_start,
    recover_requester_attempts,
)

logger = logging.getLogger(__name__)

Number = Union[int, float]

DENIED_RATE_LIMITED = "rate_limited"
DENIED_STORAGE = "storage_unavailable"


@dataclass
class AdmissionDecision:
    allowed: bool
    remaining: Number
    is_authenticated: bool
    funding_pool: Optional[FundingPool] = None
    attempt_id: Optional[str] = None
    denial_reason: Optional[str] = None


@dataclass
class EntitlementStatus:
    remaining: Number
    is_authenticated: bool
    free_remaining: int
    paid_credits: Number
    can_use_partial_regeneration: bool
    unlimited: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def active_window_start(user: Optional[User], now: datetime) -> Optional[datetime]:
    """Start of the account's free window, or None when it never began or has elapsed."""
    started = _as_utc(user.free_window_started_at) if user else None
    if started is None:
        return None
    if now - started >= timedelta(days=max(int(settings.AUTH_FREE_WINDOW_DAYS), 1)):
        return None
    return started


async def _lock_requester(db: AsyncSession, requester_key: str) -> None:
    """Serialize admissions per requester for the rest of the transaction."""
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": requester_key})


async def get_account(account_id: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == account_id))
    return result.scalar_one_or_none()


async def ensure_account(identity: AuthenticatedRequester, db: AsyncSession) -> User:
    """Return the account row, creating it from session claims on first contact."""
    user = await get_account(identity.account_id, db)
    if user:
        return user

    email = normalize_email(identity.email)
    if email:
        taken = await db.execute(select(User.id).where(User.email == email))
        if taken.scalar_one_or_none():
            email = None
    user = User(id=identity.account_id, email=email or f"{identity.account_id}@accounts.invalid")
    try:
        async with db.begin_nested():
            db.add(user)
    except IntegrityError:
        user = await get_account(identity.account_id, db)
        if user is None:
            raise
    return user


async def _free_remaining(user: Optional[User], db: AsyncSession, now: datetime) -> Tuple[int, Optional[datetime]]:
    limit = max(int(settings.AUTH_FREE_LIMIT), 0)
    window_start = active_window_start(user, now)
    if user is None or window_start is None:
        return limit, None
    used = await count_free_usage(user.id, db, since=window_start)
    return max(limit - used, 0), window_start


async def _paid_balance(account_id: str, db: AsyncSession) -> int:
    try:
        return await get_credit_balance(account_id, db)
    except StorageUnavailable:
        # Fail closed.
        logger.exception("Paid credit read failed for %s; treating balance as 0", account_id)
        return 0


async def get_entitlement_status(identity: RequesterIdentity, db: AsyncSession) -> EntitlementStatus:
    """Current remaining generations without reserving anything."""
    if isinstance(identity, AnonymousRequester):
        limit = max(int(settings.ANONYMOUS_FREE_LIMIT), 0)
        try:
            used = await count_anonymous_usage(identity.network_address, db)
        except StorageUnavailable:
            logger.exception("Usage ledger read failed for anonymous requester")
            used = limit
        remaining = max(limit - used, 0)
        return EntitlementStatus(
            remaining=remaining,
            is_authenticated=False,
            free_remaining=remaining,
            paid_credits=0,
            can_use_partial_regeneration=False,
        )

    now = datetime.now(timezone.utc)
    user = await get_account(identity.account_id, db)
    try:
        free_remaining, _ = await _free_remaining(user, db, now)
    except StorageUnavailable:
        logger.exception("Usage ledger read failed for %s", identity.account_id)
        free_remaining = 0
    paid = await _paid_balance(identity.account_id, db) if user else 0
    return EntitlementStatus(
        remaining=remaining_generations(free_remaining, paid),
        is_authenticated=True,
        free_remaining=free_remaining,
        paid_credits=remaining_generations(0, paid),
        can_use_partial_regeneration=paid >= half_units_for(CostClass.HALF),
    )


async def check_admission(
    identity: RequesterIdentity,
    cost_class: CostClass,
    db: AsyncSession,
) -> AdmissionDecision:
    """
    Read-only admission check.

    ``remaining`` is what would be left after this request when allowed, and
    what is left now when denied.
    """
    cost_class = CostClass(cost_class)
    if isinstance(identity, AnonymousRequester):
        limit = max(int(settings.ANONYMOUS_FREE_LIMIT), 0)
        try:
            used = await count_anonymous_usage(identity.network_address, db)
        except StorageUnavailable:
            logger.exception("Usage ledger read failed; denying anonymous admission")
            return AdmissionDecision(False, 0, False, denial_reason=DENIED_STORAGE)
        allocation = allocate_anonymous(cost_class, used, limit)
        if not allocation:
            return AdmissionDecision(False, max(limit - used, 0), False, denial_reason=DENIED_RATE_LIMITED)
        return AdmissionDecision(True, max(limit - used - 1, 0), False, funding_pool=FundingPool.ANONYMOUS)

    now = datetime.now(timezone.utc)
    user = await get_account(identity.account_id, db)
    try:
        free_remaining, _ = await _free_remaining(user, db, now)
    except StorageUnavailable:
        logger.exception("Usage ledger read failed; denying admission for %s", identity.account_id)
        return AdmissionDecision(False, 0, True, denial_reason=DENIED_STORAGE)
    paid = await _paid_balance(identity.account_id, db) if user else 0
    return _decide_authenticated(cost_class, free_remaining, paid)


def _decide_authenticated(cost_class: CostClass, free_remaining: int, paid: int) -> AdmissionDecision:
    allocation = allocate(cost_class, free_remaining, paid)
    if not allocation:
        return AdmissionDecision(
            False,
            remaining_generations(free_remaining, paid),
            True,
            denial_reason=DENIED_RATE_LIMITED,
        )
    pool, amount = allocation[0]
    if pool == FundingPool.FREE:
        remaining = remaining_generations(free_remaining - amount, paid)
    else:
        remaining = remaining_generations(free_remaining, paid - amount)
    return AdmissionDecision(True, remaining, True, funding_pool=pool)


async def admit(
    identity: RequesterIdentity,
    cost_class: CostClass,
    db: AsyncSession,
    *,
    network_address: Optional[str] = None,
    session_id: Optional[str] = None,
    mode: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AdmissionDecision:
    """
    Decide and reserve in one transaction.

    On success a ``pending`` GenerationAttempt exists and any paid half-units
    are already debited; the caller must finish the attempt with
    ``record_attempt_end``. Raises StorageUnavailable when the reservation
    cannot be written.
    """
    cost_class = CostClass(cost_class)
    try:
        await _lock_requester(db, identity.requester_key)
        # Denials below still commit so this sweep is kept.
        await recover_requester_attempts(
            identity, db, max_age_minutes=int(settings.PENDING_ATTEMPT_TIMEOUT_MINUTES)
        )
        if isinstance(identity, AnonymousRequester):
            decision = await check_admission(identity, cost_class, db)
            if not decision.allowed:
                await db.commit()
                return decision
            attempt = await record_attempt_start(
                identity,
                db,
                cost_class=cost_class,
                funding_pool=FundingPool.ANONYMOUS,
                session_id=session_id,
                mode=mode,
                user_agent=user_agent,
                commit=False,
            )
            await db.commit()
            decision.attempt_id = attempt.id
            return decision

        now = datetime.now(timezone.utc)
        user = await ensure_account(identity, db)
        try:
            free_remaining, window_start = await _free_remaining(user, db, now)
        except StorageUnavailable:
            logger.exception("Usage ledger read failed; denying admission for %s", identity.account_id)
            await db.rollback()
            return AdmissionDecision(False, 0, True, denial_reason=DENIED_STORAGE)
        paid = await _paid_balance(user.id, db)
        decision = _decide_authenticated(cost_class, free_remaining, paid)
        if not decision.allowed:
            await db.commit()
            return decision

        reserved = 0
        if decision.funding_pool == FundingPool.FREE:
            if window_start is None:
                user.free_window_started_at = now
        else:
            reserved = half_units_for(cost_class)
            if not await consume_credits(user.id, db, half_units=reserved, commit=False):
                await db.commit()
                return AdmissionDecision(
                    False,
                    remaining_generations(free_remaining, 0),
                    True,
                    denial_reason=DENIED_RATE_LIMITED,
                )

        attempt = await record_attempt_start(
            identity,
            db,
            cost_class=cost_class,
            funding_pool=decision.funding_pool,
            half_units_reserved=reserved,
            network_address=network_address,
            session_id=session_id,
            mode=mode,
            user_agent=user_agent,
            commit=False,
        )
        await db.commit()
        decision.attempt_id = attempt.id
        return decision
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable("admission reservation could not be written") from exc
