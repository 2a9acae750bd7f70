"""Rate limiting dependency backed by the in-memory sliding window limiter."""

from __future__ import annotations

import math
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials

from routers.auth_scope import auth_scheme
from services.rate_limiter import get_client_ip, rate_limiter
from services.session_token import decode_session_token


def _client_identifier(request: Request) -> str:
    peer = request.client.host if request.client and request.client.host else None
    return get_client_ip(request.headers, peer)


def _user_identifier(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials and credentials.scheme.lower() == "bearer":
        try:
            return str(decode_session_token(credentials.credentials).get("sub", ""))
        except ValueError:
            pass
    # Unauthenticated callers fall back to their IP; auth rejects them afterwards
    return f"ip:{_client_identifier(request)}"


def rate_limit(prefix: str, limit: int, window_seconds: int, scope: str = "user") -> Callable[..., None]:
    """Return a FastAPI dependency that enforces a sliding-window quota.

    ``scope="user"`` keys the window by the authenticated user, ``scope="ip"``
    by the client address. Keys look like ``checkout:<user_id>`` or
    ``webhook:<ip>``.
    """
    window_ms = int(window_seconds) * 1000

    async def _dependency(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    ):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        if scope == "ip":
            identifier = _client_identifier(request)
        else:
            identifier = _user_identifier(request, credentials)
        key = f"{prefix}:{identifier}"

        result = rate_limiter.check(key, window_ms, limit)
        if result.limited:
            retry_after = max(1, math.ceil(result.reset_ms / 1000))
            raise HTTPException(
                status_code=429,
                detail={"message": f"Rate limit exceeded for {prefix}. Try again later.", "code": "RATE_LIMITED"},
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
