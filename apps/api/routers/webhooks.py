"""Payment provider webhooks."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.rate_limit import rate_limit
from services.payments import PaymentEventHandler
from services.rate_limiter import WEBHOOK_LIMIT

router = APIRouter()
logger = logging.getLogger(__name__)


def get_payment_handler(request: Request) -> PaymentEventHandler:
    return PaymentEventHandler(getattr(request.app.state, "payment_provider", None))


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="stripe-signature"),
    _rate_limit: None = Depends(
        rate_limit("webhook", WEBHOOK_LIMIT.max_requests, WEBHOOK_LIMIT.window_ms // 1000, scope="ip")
    ),
    handler: PaymentEventHandler = Depends(get_payment_handler),
    db: AsyncSession = Depends(get_db),
):
    """Verify and apply a Stripe event. Redeliveries answer 200 with duplicate=true."""
    payload = await request.body()
    try:
        result = await handler.handle_webhook(payload, stripe_signature, db)
    except Exception:
        logger.exception("webhook_failed provider=stripe bytes=%s", len(payload))
        raise
    return result.as_dict()
