"""Authentication dependencies for requester and admin scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import (
    AnonymousRequester,
    AuthenticatedRequester,
    RequesterIdentity,
    client_network_address,
)
from services.session_token import decode_admin_token, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)

ADMIN_COOKIE_NAME = "admin_session"


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None

    def as_requester(self) -> AuthenticatedRequester:
        return AuthenticatedRequester(account_id=self.user_id, email=self.email)


@dataclass
class AdminContext:
    admin_id: str


def _context_from_token(token: str) -> AuthContext:
    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_token(credentials.credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like get_auth_context, but anonymous callers resolve to None. A bad token is still 401."""
    if not credentials:
        return None
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unsupported authorization scheme.")
    return _context_from_token(credentials.credentials)


async def get_requester(
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
) -> RequesterIdentity:
    if auth:
        return auth.as_requester()
    return AnonymousRequester(network_address=client_network_address(request))


async def get_admin_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AdminContext:
    """Resolve the admin from a Bearer admin token or the admin session cookie."""
    token = None
    if credentials and credentials.scheme.lower() == "bearer":
        token = credentials.credentials
    if not token:
        token = request.cookies.get(ADMIN_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Admin session required.")

    try:
        payload = decode_admin_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AdminContext(admin_id=str(payload.get("sub", "")))
