"""Paystack API client and webhook signature helpers."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


class PaystackError(Exception):
    """Processor call failed or returned an unsuccessful envelope."""


def _headers() -> Dict[str, str]:
    secret = (settings.PAYSTACK_SECRET_KEY or "").strip()
    if not secret:
        raise PaystackError("PAYSTACK_SECRET_KEY is not configured")
    return {
        "Authorization": f"Bearer {secret}",
        "Content-Type": "application/json",
    }


async def _request(method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    headers = _headers()
    try:
        async with httpx.AsyncClient(base_url=settings.PAYSTACK_BASE_URL, timeout=30.0) as client:
            response = await client.request(method, path, headers=headers, json=json)
    except httpx.HTTPError as exc:
        raise PaystackError(f"Paystack request failed: {exc}") from exc

    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if response.status_code >= 400 or not payload.get("status"):
        message = payload.get("message") or response.reason_phrase or "Unknown error"
        raise PaystackError(f"Paystack API error: {message}")
    return payload.get("data") or {}


async def initialize_transaction(
    *,
    email: str,
    amount: int,
    reference: str,
    currency: str,
    callback_url: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a hosted checkout; ``amount`` is in the smallest currency unit."""
    return await _request(
        "POST",
        "/transaction/initialize",
        json={
            "email": email,
            "amount": int(amount),
            "currency": currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        },
    )


async def verify_transaction(reference: str) -> Dict[str, Any]:
    """Server-to-server status lookup for a processor reference."""
    return await _request("GET", f"/transaction/verify/{reference}")


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of the hex HMAC-SHA512 the processor sends with every event."""
    if not secret or not signature:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
