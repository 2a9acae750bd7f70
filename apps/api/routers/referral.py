"""Referral router. A user's referral code is their user id."""

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.rate_limiter import REFERRAL_APPLY_LIMIT, get_client_ip
from services.referrals import ReferralContext, apply_referral_code, get_referral_stats, list_referral_history

router = APIRouter()


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=200)


@router.post("/apply")
async def apply_referral(
    request: ApplyReferralRequest,
    http_request: Request,
    _rate_limit: None = Depends(
        rate_limit("referral", REFERRAL_APPLY_LIMIT.max_requests, REFERRAL_APPLY_LIMIT.window_ms // 1000)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    peer = http_request.client.host if http_request.client and http_request.client.host else None
    context = ReferralContext(
        ip_address=get_client_ip(http_request.headers, peer),
        user_agent=http_request.headers.get("user-agent"),
    )
    result = await apply_referral_code(auth.user_id, request.referral_code.strip(), context, db)
    return {
        "success": True,
        "referral_id": result.referral_id,
        "credits_received": result.referred_credits,
    }


@router.get("/stats")
async def referral_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_referral_stats(auth.user_id, db)


@router.get("/history")
async def referral_history(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"referrals": await list_referral_history(auth.user_id, db, limit=limit)}
