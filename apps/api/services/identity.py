"""Requester identity resolution for the entitlement core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Request


UNKNOWN_ADDRESS = "unknown"


@dataclass(frozen=True)
class AuthenticatedRequester:
    account_id: str
    email: Optional[str] = None

    @property
    def requester_key(self) -> str:
        return f"account:{self.account_id}"


@dataclass(frozen=True)
class AnonymousRequester:
    """Best-effort identity; shared NAT and VPN exits collapse into one requester."""

    network_address: str

    @property
    def requester_key(self) -> str:
        return f"address:{self.network_address}"


RequesterIdentity = Union[AuthenticatedRequester, AnonymousRequester]


def normalize_email(value: Optional[str]) -> Optional[str]:
    text = str(value or "").strip().lower()
    return text or None


def client_network_address(request: Request) -> str:
    """Return the first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_ADDRESS


def client_session_id(request: Request) -> Optional[str]:
    value = (request.headers.get("x-client-session") or "").strip()
    return value or None
