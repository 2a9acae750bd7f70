"""
User registration and profile router.

Identity comes from the upstream auth provider through the session token;
registration provisions the user row and its wallet. Both sign-in routes
claim the daily login reward, which is a no-op after the first claim of the
UTC day.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_user, provision_account
from services.credits import grant_daily_login_reward
from services.rate_limiter import GLOBAL_IP_LIMIT

router = APIRouter()


class RegisterRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    name: Optional[str] = Field(default=None, max_length=200)


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    created: bool = False
    total_credits: int = 0
    tier: str = "free"


@router.post("/register", response_model=CurrentUserResponse)
async def register_user(
    request: RegisterRequest,
    _rate_limit: None = Depends(
        rate_limit("global", GLOBAL_IP_LIMIT.max_requests, GLOBAL_IP_LIMIT.window_ms // 1000, scope="ip")
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Provision the session user and claim today's login reward. Safe to call on every sign-in."""
    user, created = await provision_account(
        auth.user_id,
        db,
        email=request.email or auth.email,
        name=request.name,
    )
    balance = await grant_daily_login_reward(user.id, db)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        created=created,
        total_credits=balance.total_available,
        tier=balance.tier,
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await get_user(db, auth.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    balance = await grant_daily_login_reward(user.id, db)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        total_credits=balance.total_available,
        tier=balance.tier,
    )
