"""Billing router: catalogue, checkout, orders and subscription state."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.order import Order
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_user
from services.entitlements import get_user_entitlements
from services.errors import UserNotFoundError
from services.pricing import CREDIT_PACKAGES, PRICING_PLANS, get_credit_package
from services.rate_limiter import CHECKOUT_LIMIT

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    package_id: str = Field(min_length=1, max_length=50)


@router.get("/packages")
async def list_packages():
    return {"packages": [package.as_dict() for package in CREDIT_PACKAGES]}


@router.get("/plans")
async def list_plans():
    return {"plans": [plan.as_dict() for plan in PRICING_PLANS]}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    http_request: Request,
    _rate_limit: None = Depends(
        rate_limit("checkout", CHECKOUT_LIMIT.max_requests, CHECKOUT_LIMIT.window_ms // 1000)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)

    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")

    provider = getattr(http_request.app.state, "payment_provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    package = get_credit_package(request.package_id)
    if package is None:
        raise HTTPException(status_code=400, detail=f"Unknown package: {request.package_id}")

    user = await get_user(db, scoped_user_id)
    if user is None:
        raise UserNotFoundError(scoped_user_id)

    session = provider.create_checkout_session(scoped_user_id, package, customer_email=user.email)
    return {
        "session_id": session.session_id,
        "checkout_url": session.checkout_url,
        "package_id": package.id,
        "credits": package.credits,
    }


@router.get("/orders")
async def list_orders(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Order)
        .where(Order.user_id == auth.user_id)
        .order_by(Order.created_at.desc())
        .limit(limit)
    )
    return {
        "orders": [
            {
                "id": order.id,
                "package_id": order.package_id,
                "amount": order.amount,
                "currency": order.currency,
                "credits": order.credits,
                "status": order.status,
                "created_at": order.created_at.isoformat() if order.created_at else None,
            }
            for order in result.scalars().all()
        ]
    }


@router.get("/subscription")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entitlements = await get_user_entitlements(auth.user_id, db)
    balance = entitlements.balance
    return {
        "tier": entitlements.tier,
        "is_paid": entitlements.is_paid,
        "subscription_credits": balance.subscription_credits,
        "subscription_credits_limit": balance.subscription_credits_limit,
        "subscription_resets_at": (
            balance.subscription_resets_at.isoformat() if balance.subscription_resets_at else None
        ),
    }
