"""Credits router: balance, daily login, reserve check, consumption and history."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.credit_record import CreditRecordType
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import check_reserve, consume, get_balance, grant_daily_login_reward
from services.errors import InsufficientCreditsError
from services.ledger import MAX_PAGE_SIZE, list_credit_records, serialize_credit_record
from services.rate_limiter import AI_GENERATION_LIMIT, API_USER_LIMIT

router = APIRouter()
logger = logging.getLogger(__name__)

_api_user_limit = rate_limit("api:user", API_USER_LIMIT.max_requests, API_USER_LIMIT.window_ms // 1000)


class ConsumeRequest(BaseModel):
    user_id: Optional[str] = None
    cost: int = Field(ge=0, le=1_000_000)
    task_id: Optional[str] = Field(default=None, max_length=200)
    model_id: Optional[str] = Field(default=None, max_length=200)
    input_tokens: Optional[int] = Field(default=None, ge=0)
    output_tokens: Optional[int] = Field(default=None, ge=0)
    total_tokens: Optional[int] = Field(default=None, ge=0)


@router.get("/balance")
async def credits_balance(
    user_id: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(_api_user_limit),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    balance = await get_balance(scoped_user_id, db)
    return balance.as_dict()


@router.post("/daily-login")
async def daily_login(
    _rate_limit: None = Depends(_api_user_limit),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    balance = await grant_daily_login_reward(auth.user_id, db)
    return balance.as_dict()


@router.get("/reserve")
async def reserve_check(
    _rate_limit: None = Depends(_api_user_limit),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """402 with INSUFFICIENT_CREDITS when the balance is below the reserve."""
    check = await check_reserve(auth.user_id, db)
    if not check.allowed:
        raise InsufficientCreditsError(check.reason or "Insufficient credits")
    return {"allowed": True, "balance": check.balance.as_dict()}


@router.post("/consume")
async def consume_credits(
    request: ConsumeRequest,
    _rate_limit: None = Depends(
        rate_limit("ai-gen", AI_GENERATION_LIMIT.max_requests, AI_GENERATION_LIMIT.window_ms // 1000)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    metadata = request.model_dump(exclude={"user_id", "cost"}, exclude_none=True)
    result = await consume(scoped_user_id, db, cost=request.cost, metadata=metadata)
    return {
        "credits_consumed": result.credits_consumed,
        "requested": result.requested,
        "shortfall": result.shortfall,
        "partial": result.is_partial,
        "balance": result.balance.as_dict(),
    }


@router.get("/records")
async def credit_records(
    record_type: Optional[CreditRecordType] = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    _rate_limit: None = Depends(_api_user_limit),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    records, total = await list_credit_records(
        db,
        user_id=auth.user_id,
        record_type=record_type,
        page=page,
        limit=limit,
    )
    return {
        "records": [serialize_credit_record(record) for record in records],
        "total": total,
        "page": page,
        "limit": limit,
    }
