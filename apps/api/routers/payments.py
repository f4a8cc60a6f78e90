"""Payments router: checkout, processor callbacks and credit linking."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.rate_limit import rate_limit
from services.payments import handle_webhook, initiate_checkout, link_unlinked_payments, verify_callback
from services.paystack import SIGNATURE_HEADER

router = APIRouter()
logger = logging.getLogger(__name__)


class InitiatePaymentRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    amount: Optional[int] = Field(default=None, ge=1)
    half_units: Optional[int] = Field(default=None, ge=1, le=10000)


@router.post("/initiate")
async def initiate_payment(
    request: InitiatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("payment_initiate", limit=20, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await initiate_checkout(
        db,
        account=auth.as_requester() if auth else None,
        email=request.email,
        amount=request.amount,
        half_units=request.half_units,
    )


@router.get("/callback")
async def payment_callback(
    reference: Optional[str] = Query(default=None),
    trxref: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Browser redirect target after hosted checkout."""
    reference = (reference or trxref or "").strip()
    if not reference:
        return RedirectResponse(settings.PAYMENT_FAILURE_URL, status_code=303)

    try:
        result = await verify_callback(reference, db)
    except HTTPException as exc:
        logger.warning("Payment callback for %s rejected: %s", reference, exc.detail)
        return RedirectResponse(settings.PAYMENT_FAILURE_URL, status_code=303)

    if result["status"] != "success":
        return RedirectResponse(settings.PAYMENT_FAILURE_URL, status_code=303)

    params = {"reference": reference}
    if result["needs_signup"]:
        params["signup"] = "1"
    return RedirectResponse(f"{settings.PAYMENT_SUCCESS_URL}?{urlencode(params)}", status_code=303)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    return await handle_webhook(raw_body, signature, db)


@router.post("/link-credits")
async def link_credits(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Attach purchases made before sign-up to the caller's account."""
    return await link_unlinked_payments(auth.as_requester(), db)
