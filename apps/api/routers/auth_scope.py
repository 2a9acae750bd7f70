"""Authentication dependencies: bearer session, user scoping and admin gate."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.accounts import get_user
from services.rate_limiter import get_client_ip
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class AdminContext:
    user_id: str
    email: Optional[str]
    ip_address: str


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def require_admin(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AdminContext:
    """Allow the request only when the session user has the admin role."""
    user = await get_user(db, auth.user_id)
    if user is None or not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    peer = request.client.host if request.client and request.client.host else None
    return AdminContext(
        user_id=user.id,
        email=user.email or auth.email,
        ip_address=get_client_ip(request.headers, peer),
    )
