"""Signed session tokens for the credits API."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "credits_session"
SESSION_TOKEN_ISSUER = "credits-api"


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a bearer token for ``user_id``.

    Returns ``{"token", "expires_at"}`` with ``expires_at`` in epoch seconds.
    Roles are not embedded; admin checks read the user row on every request.
    """
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = now + timedelta(hours=ttl_hours)
    claims: Dict[str, Any] = {
        "sub": str(user_id),
        "iss": SESSION_TOKEN_ISSUER,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry, issuer and token type. Raises ValueError."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=SESSION_TOKEN_ISSUER,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return payload
