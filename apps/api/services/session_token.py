"""Session token helpers for user and admin authentication."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "avatar_session"
ADMIN_TOKEN_TYPE = "avatar_admin"


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token for an identity issued by the auth provider."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def _decode(token: str, secret: str, expected_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    token_type = str(payload.get("type", "")).strip()
    if token_type != expected_type:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return payload


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed user session token."""
    return _decode(token, settings.JWT_SECRET, SESSION_TOKEN_TYPE)


def create_admin_token(admin_id: str) -> Dict[str, Any]:
    """Admin tokens are signed with their own secret so user tokens can never pass as admin."""
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(settings.ADMIN_SESSION_HOURS or 24), 1))
    claims = {
        "sub": admin_id,
        "type": ADMIN_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.ADMIN_SESSION_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_admin_token(token: str) -> Dict[str, Any]:
    return _decode(token, settings.ADMIN_SESSION_SECRET, ADMIN_TOKEN_TYPE)
