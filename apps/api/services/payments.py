"""Payment reconciliation: turn processor confirmations into paid credits exactly once."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings, unsigned_webhooks_allowed
from models.pending_payment import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS, PendingPayment
from models.user import User
from services import paystack
from services.admission import ensure_account
from services.credits import grant_credits
from services.errors import PaymentVerificationFailed
from services.identity import AuthenticatedRequester, normalize_email

logger = logging.getLogger(__name__)

EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_CHARGE_FAILED = "charge.failed"
PROCESSOR_FAILED_STATUSES = {"failed", "abandoned", "reversed"}


def _new_reference() -> str:
    now = datetime.now(timezone.utc)
    return f"ref_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:12]}"


def format_display_amount(amount: int, currency: str) -> str:
    """Reporting only; grants never derive from the paid amount."""
    return f"{currency} {int(amount) / 100:.2f}"


async def initiate_checkout(
    db: AsyncSession,
    *,
    account: Optional[AuthenticatedRequester],
    email: Optional[str] = None,
    amount: Optional[int] = None,
    half_units: Optional[int] = None,
) -> Dict[str, Any]:
    """Record a pending payment and open a hosted checkout for it."""
    payer_email = normalize_email(account.email if account and account.email else email)
    if not payer_email:
        raise HTTPException(status_code=422, detail="email is required for checkout without an account")

    plan_amount = int(amount if amount is not None else settings.DEFAULT_PLAN_AMOUNT)
    plan_half_units = int(half_units if half_units is not None else settings.DEFAULT_PLAN_HALF_UNITS)
    if plan_amount <= 0 or plan_half_units <= 0:
        raise HTTPException(status_code=422, detail="amount and half_units must be greater than 0")

    user_id = None
    if account:
        user = await ensure_account(account, db)
        user_id = user.id

    payment = PendingPayment(
        processor_reference=_new_reference(),
        user_id=user_id,
        payer_email=payer_email,
        amount=plan_amount,
        currency=settings.PAYMENT_CURRENCY,
        half_units=plan_half_units,
        status=PAYMENT_PENDING,
    )
    db.add(payment)
    await db.commit()

    try:
        checkout = await paystack.initialize_transaction(
            email=payer_email,
            amount=plan_amount,
            reference=payment.processor_reference,
            currency=payment.currency,
            callback_url=settings.PAYMENT_CALLBACK_URL,
            metadata={"payment_id": payment.id, "user_id": user_id, "half_units": plan_half_units},
        )
    except paystack.PaystackError as exc:
        logger.error("Checkout initiation failed for payment %s: %s", payment.id, exc)
        payment.status = PAYMENT_FAILED
        payment.completed_at = datetime.now(timezone.utc)
        await db.commit()
        raise HTTPException(status_code=502, detail="Payment initiation failed") from exc

    returned_reference = checkout.get("reference")
    if returned_reference and returned_reference != payment.processor_reference:
        payment.processor_reference = returned_reference
        await db.commit()

    return {
        "payment_id": payment.id,
        "reference": payment.processor_reference,
        "authorization_url": checkout.get("authorization_url"),
        "amount": plan_amount,
        "display_amount": format_display_amount(plan_amount, payment.currency),
        "half_units": plan_half_units,
    }


async def _get_payment(reference: str, db: AsyncSession) -> PendingPayment:
    result = await db.execute(
        select(PendingPayment).where(PendingPayment.processor_reference == reference)
    )
    payment = result.scalar_one_or_none()
    if not payment:
        logger.warning("Payment event for unknown reference %s", reference)
        raise PaymentVerificationFailed(404, "Payment not found")
    return payment


async def _find_account_by_email(email: Optional[str], db: AsyncSession) -> Optional[str]:
    email = normalize_email(email)
    if not email:
        return None
    result = await db.execute(select(User.id).where(func.lower(User.email) == email).limit(1))
    return result.scalar_one_or_none()


async def reconcile_success(reference: str, db: AsyncSession, *, paid_amount: Optional[int] = None) -> Dict[str, Any]:
    """
    Mark a payment successful and credit its owner, at most once.

    The pending -> success transition is a conditional UPDATE, so duplicate
    or concurrent deliveries of the same event credit exactly once. Payments
    whose payer has no account yet stay unlinked until ``link_unlinked_payments``.
    """
    payment = await _get_payment(reference, db)
    if payment.status == PAYMENT_SUCCESS:
        return {"status": "already_processed", "reference": reference}
    if payment.status != PAYMENT_PENDING:
        logger.warning("Ignoring success event for %s payment %s", payment.status, reference)
        return {"status": "ignored", "reference": reference}
    if paid_amount is not None and int(paid_amount) < int(payment.amount):
        logger.error(
            "Payment %s underpaid: expected %s, processor reported %s",
            reference,
            payment.amount,
            paid_amount,
        )
        raise PaymentVerificationFailed(400, "Paid amount does not match payment")

    now = datetime.now(timezone.utc)
    transitioned = await db.execute(
        update(PendingPayment)
        .where(
            PendingPayment.id == payment.id,
            PendingPayment.status == PAYMENT_PENDING,
        )
        .values(status=PAYMENT_SUCCESS, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if transitioned.rowcount != 1:
        await db.rollback()
        return {"status": "already_processed", "reference": reference}

    owner_id = payment.user_id or await _find_account_by_email(payment.payer_email, db)
    credited = False
    if owner_id:
        await db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == payment.id)
            .values(user_id=owner_id, credited_at=now)
            .execution_options(synchronize_session=False)
        )
        await grant_credits(owner_id, db, half_units=payment.half_units, commit=False)
        credited = True
    await db.commit()

    if credited:
        logger.info("Credited %s half-units to %s for %s", payment.half_units, owner_id, reference)
    else:
        logger.info("Payment %s succeeded without an account; awaiting link", reference)
    return {
        "status": "success",
        "reference": reference,
        "credited": credited,
        "user_id": owner_id,
        "half_units": payment.half_units,
    }


async def mark_failed(reference: str, db: AsyncSession) -> Dict[str, Any]:
    payment = await _get_payment(reference, db)
    result = await db.execute(
        update(PendingPayment)
        .where(
            PendingPayment.id == payment.id,
            PendingPayment.status == PAYMENT_PENDING,
        )
        .values(status=PAYMENT_FAILED, completed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return {"status": "already_processed", "reference": reference}
    return {"status": "failed", "reference": reference}


def verify_webhook_request(raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Authenticate and parse a webhook body; raises before any state is touched."""
    secret = (settings.PAYSTACK_WEBHOOK_SECRET or "").strip()
    if secret:
        if not paystack.verify_webhook_signature(raw_body, signature, secret):
            logger.warning("Rejected webhook with invalid signature")
            raise PaymentVerificationFailed(401, "Invalid signature")
    elif unsigned_webhooks_allowed():
        logger.warning("Webhook secret not configured; accepting unsigned event in development")
    else:
        logger.error("Webhook secret not configured; rejecting event")
        raise PaymentVerificationFailed(401, "Webhook verification is not configured")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return event


async def handle_webhook(raw_body: bytes, signature: Optional[str], db: AsyncSession) -> Dict[str, Any]:
    event = verify_webhook_request(raw_body, signature)
    event_type = str(event.get("event") or "")
    data = event.get("data") or {}
    reference = str(data.get("reference") or "").strip()

    if event_type not in (EVENT_CHARGE_SUCCESS, EVENT_CHARGE_FAILED):
        logger.info("Unhandled webhook event type: %s", event_type)
        return {"status": "ignored", "event": event_type}
    if not reference:
        raise HTTPException(status_code=400, detail="Event is missing a reference")

    if event_type == EVENT_CHARGE_SUCCESS:
        return await reconcile_success(reference, db, paid_amount=data.get("amount"))
    return await mark_failed(reference, db)


async def verify_callback(reference: str, db: AsyncSession) -> Dict[str, Any]:
    """Confirm a checkout redirect with the processor and reconcile it."""
    await _get_payment(reference, db)
    try:
        transaction = await paystack.verify_transaction(reference)
    except paystack.PaystackError as exc:
        logger.error("Callback verification failed for %s: %s", reference, exc)
        return {"status": "pending", "reference": reference, "needs_signup": False}

    processor_status = str(transaction.get("status") or "").lower()
    if processor_status == "success":
        await reconcile_success(reference, db, paid_amount=transaction.get("amount"))
        payment = await _get_payment(reference, db)
        await db.refresh(payment)
        return {"status": "success", "reference": reference, "needs_signup": payment.user_id is None}
    if processor_status in PROCESSOR_FAILED_STATUSES:
        await mark_failed(reference, db)
        return {"status": "failed", "reference": reference, "needs_signup": False}
    return {"status": "pending", "reference": reference, "needs_signup": False}


async def link_unlinked_payments(account: AuthenticatedRequester, db: AsyncSession) -> Dict[str, Any]:
    """
    Attach successful, unlinked payments made with this account's email and grant them.

    Each payment is claimed with a conditional UPDATE on ``user_id IS NULL``,
    so repeated or concurrent runs never grant the same payment twice.
    """
    email = normalize_email(account.email)
    if not email:
        raise HTTPException(status_code=401, detail="Authenticated email required")

    user = await ensure_account(account, db)
    result = await db.execute(
        select(PendingPayment.id, PendingPayment.half_units).where(
            PendingPayment.status == PAYMENT_SUCCESS,
            PendingPayment.user_id.is_(None),
            func.lower(PendingPayment.payer_email) == email,
        )
    )
    candidates = result.all()

    now = datetime.now(timezone.utc)
    linked = 0
    half_units_total = 0
    for payment_id, half_units in candidates:
        claimed = await db.execute(
            update(PendingPayment)
            .where(
                PendingPayment.id == payment_id,
                PendingPayment.user_id.is_(None),
                PendingPayment.status == PAYMENT_SUCCESS,
            )
            .values(user_id=user.id, credited_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            linked += 1
            half_units_total += int(half_units)

    if half_units_total > 0:
        await grant_credits(user.id, db, half_units=half_units_total, commit=False)
    await db.commit()

    if linked:
        logger.info("Linked %s payment(s) worth %s half-units to %s", linked, half_units_total, user.id)
    return {
        "success": True,
        "payments_linked": linked,
        "half_units_linked": half_units_total,
        "credits_linked": half_units_total / 2,
        "message": (
            f"Linked {linked} payment(s)" if linked else "No unlinked payments found"
        ),
    }
