"""Idempotent application of payment provider events to wallets.

The provider delivers events at least once and possibly out of order. The
unique index on ``orders.provider_session_id`` is the only guard: the order
row is inserted with ON CONFLICT DO NOTHING and a conflict means the event was
already applied. The order insert and the balance mutation share one
transaction so neither can exist without the other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import uuid
from typing import Any, Dict, Optional, Protocol

import stripe
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import atomic
from models.credit_record import CreditPool, CreditRecordType
from models.order import Order
from models.wallet import SubscriptionTier, Wallet
from services.credits import (
    apply_daily_reset,
    apply_subscription_clear,
    apply_subscription_reset,
    as_utc,
    credit_bonus_pool,
    get_effective_tier,
    lock_wallet,
    parse_tier,
    utcnow,
)
from services.entitlements import invalidate_entitlements_cache
from services.errors import PaymentEventError
from services.ledger import append_credit_record
from services.pricing import CreditPackage, get_credit_package

logger = logging.getLogger(__name__)

CREDIT_PURCHASE_COMPLETED = "credit_purchase.completed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_DELETED = "subscription.deleted"

SUBSCRIPTION_RESET_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_RENEWED)
INACTIVE_SUBSCRIPTION_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
BILLING_PERIOD_DAYS = {"month": 31, "year": 366}

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class PaymentEvent:
    type: str
    session_id: str
    user_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    amount_total: int = 0
    currency: str = "usd"
    expires_at: Optional[datetime] = None
    subscription_id: Optional[str] = None


@dataclass
class HandledEvent:
    event_type: str
    handled: bool
    duplicate: bool = False
    user_id: Optional[str] = None
    credits: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "event_type": self.event_type,
            "handled": self.handled,
            "duplicate": self.duplicate,
        }


@dataclass
class CheckoutSession:
    session_id: str
    checkout_url: str


class PaymentProvider(Protocol):
    def parse_event(self, payload: bytes, signature: str) -> Optional[PaymentEvent]:
        ...

    def create_checkout_session(
        self,
        user_id: str,
        package: CreditPackage,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        ...


# ============= Stripe =============


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _subscription_period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    period_end = obj.get("current_period_end")
    if period_end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _timestamp(period_end)


def stripe_event_to_payment_event(event: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Map a verified Stripe event payload onto a PaymentEvent; None if irrelevant."""
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = dict(obj.get("metadata") or {})

    if event_type == "checkout.session.completed":
        user_id = metadata.get("user_id") or obj.get("client_reference_id")
        if obj.get("mode") == "subscription":
            return PaymentEvent(
                type=SUBSCRIPTION_CREATED,
                session_id=str(obj.get("id") or ""),
                user_id=user_id,
                metadata=metadata,
                amount_total=int(obj.get("amount_total") or 0),
                currency=str(obj.get("currency") or "usd"),
                expires_at=_timestamp(metadata.get("expires_at")),
                subscription_id=obj.get("subscription"),
            )
        return PaymentEvent(
            type=CREDIT_PURCHASE_COMPLETED,
            session_id=str(obj.get("id") or ""),
            user_id=user_id,
            metadata=metadata,
            amount_total=int(obj.get("amount_total") or 0),
            currency=str(obj.get("currency") or "usd"),
        )

    if event_type == "invoice.paid":
        if obj.get("billing_reason") != "subscription_cycle":
            return None
        details_metadata = dict((obj.get("subscription_details") or {}).get("metadata") or {})
        merged = {**details_metadata, **metadata}
        lines = (obj.get("lines") or {}).get("data") or []
        period_end = (lines[0].get("period") or {}).get("end") if lines else None
        return PaymentEvent(
            type=SUBSCRIPTION_RENEWED,
            session_id=str(obj.get("id") or ""),
            user_id=merged.get("user_id"),
            metadata=merged,
            amount_total=int(obj.get("amount_paid") or 0),
            currency=str(obj.get("currency") or "usd"),
            expires_at=_timestamp(period_end),
            subscription_id=obj.get("subscription"),
        )

    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        status = str(obj.get("status") or "")
        deleted = event_type.endswith("deleted") or status in INACTIVE_SUBSCRIPTION_STATUSES
        return PaymentEvent(
            type=SUBSCRIPTION_DELETED if deleted else SUBSCRIPTION_UPDATED,
            # Subscription objects are reused across updates; the event id is unique per delivery
            session_id=str(event.get("id") or ""),
            user_id=metadata.get("user_id"),
            metadata=metadata,
            expires_at=_subscription_period_end(obj),
            subscription_id=obj.get("id"),
        )

    return None


class StripePaymentProvider:
    """Stripe-backed provider: webhook verification and hosted checkout."""

    def __init__(self, api_key: str, webhook_secret: str, success_url: str, cancel_url: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    def parse_event(self, payload: bytes, signature: str) -> Optional[PaymentEvent]:
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise PaymentEventError("Invalid webhook signature") from exc
        return stripe_event_to_payment_event(json.loads(payload))

    def create_checkout_session(
        self,
        user_id: str,
        package: CreditPackage,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": package.currency,
                        "product_data": {
                            "name": package.name,
                            "description": f"{package.credits} credits",
                        },
                        "unit_amount": package.price,
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": user_id,
            "metadata": {
                "user_id": user_id,
                "package_id": package.id,
                "credits": str(package.credits),
            },
        }
        if customer_email:
            params["customer_email"] = customer_email

        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        logger.info("checkout_session_created user=%s package=%s session=%s", user_id, package.id, session.id)
        return CheckoutSession(session_id=session.id, checkout_url=session.url)


def build_payment_provider() -> Optional[PaymentProvider]:
    """Stripe provider when keys are configured, else None."""
    if not settings.STRIPE_SECRET_KEY or not settings.STRIPE_WEBHOOK_SECRET:
        return None
    return StripePaymentProvider(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
    )


# ============= Event handler =============


def _resolve_purchase_credits(event: PaymentEvent) -> int:
    raw_credits = event.metadata.get("credits")
    if raw_credits is None:
        package = get_credit_package(str(event.metadata.get("package_id") or ""))
        if package is None:
            raise PaymentEventError("Missing credits and unknown package in event metadata")
        return package.credits
    try:
        credits = int(str(raw_credits))
    except ValueError as exc:
        raise PaymentEventError("Invalid credits value") from exc
    if credits <= 0:
        raise PaymentEventError("Invalid credits value")
    return credits


def _resolve_tier(event: PaymentEvent) -> SubscriptionTier:
    raw_tier = event.metadata.get("tier") or event.metadata.get("plan_id")
    tier = parse_tier(raw_tier) if raw_tier else None
    if tier is None or tier == SubscriptionTier.FREE:
        raise PaymentEventError(f"Unknown subscription tier: {raw_tier!r}")
    return tier


def _resolve_expiry(event: PaymentEvent, now: datetime) -> datetime:
    if event.expires_at is not None:
        return as_utc(event.expires_at)
    interval = str(event.metadata.get("interval") or "month")
    return now + timedelta(days=BILLING_PERIOD_DAYS.get(interval, BILLING_PERIOD_DAYS["month"]))


def _update_changes_allotment(wallet: Wallet, tier: SubscriptionTier, event: PaymentEvent, now: datetime) -> bool:
    """A subscription update refills the pool only on a tier change or a new billing period."""
    stored_expiry = as_utc(wallet.subscription_expires_at)
    if get_effective_tier(wallet.subscription_tier, stored_expiry, now) != tier:
        return True
    if event.expires_at is None:
        return False
    return stored_expiry is None or as_utc(event.expires_at) > stored_expiry


class PaymentEventHandler:
    """Applies provider events to wallets. The provider is injected."""

    def __init__(self, provider: Optional[PaymentProvider] = None):
        self.provider = provider

    async def handle_webhook(
        self,
        payload: bytes,
        signature: str,
        db: AsyncSession,
        *,
        now: Optional[datetime] = None,
    ) -> HandledEvent:
        if self.provider is None:
            raise PaymentEventError("Payment provider is not configured", code="PROVIDER_NOT_CONFIGURED")
        event = self.provider.parse_event(payload, signature)
        if event is None:
            return HandledEvent(event_type="ignored", handled=False)
        return await self.handle(event, db, now=now)

    async def handle(self, event: PaymentEvent, db: AsyncSession, *, now: Optional[datetime] = None) -> HandledEvent:
        now = as_utc(now) or utcnow()
        if not event.session_id:
            raise PaymentEventError("Missing provider session id")
        if not event.user_id:
            raise PaymentEventError("Missing user_id in event metadata")

        if event.type == CREDIT_PURCHASE_COMPLETED:
            result = await self._handle_credit_purchase(event, db, now)
        elif event.type in SUBSCRIPTION_RESET_EVENTS:
            result = await self._handle_subscription_reset(event, db, now)
        elif event.type == SUBSCRIPTION_DELETED:
            result = await self._handle_subscription_deleted(event, db, now)
        else:
            logger.info("payment_event_ignored type=%s session=%s", event.type, event.session_id)
            return HandledEvent(event_type=event.type, handled=False, user_id=event.user_id)

        if result.handled and not result.duplicate:
            invalidate_entitlements_cache(event.user_id)
        return result

    async def _insert_order(
        self,
        db: AsyncSession,
        event: PaymentEvent,
        *,
        package_id: str,
        credits: int,
        now: datetime,
    ) -> Optional[str]:
        """Insert the order row; None when the session was already processed."""
        dialect = db.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for idempotent inserts: {dialect}")

        stmt = (
            insert(Order)
            .values(
                id=str(uuid.uuid4()),
                user_id=event.user_id,
                package_id=package_id,
                amount=int(event.amount_total or 0),
                currency=event.currency or "usd",
                credits=int(credits),
                status="completed",
                provider_session_id=event.session_id,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["provider_session_id"])
            .returning(Order.id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _handle_credit_purchase(self, event: PaymentEvent, db: AsyncSession, now: datetime) -> HandledEvent:
        credits = _resolve_purchase_credits(event)
        package_id = str(event.metadata.get("package_id") or "custom")

        async with atomic(db):
            order_id = await self._insert_order(db, event, package_id=package_id, credits=credits, now=now)
            if order_id is None:
                logger.warning("payment_event_duplicate type=%s session=%s", event.type, event.session_id)
                return HandledEvent(event_type=event.type, handled=True, duplicate=True, user_id=event.user_id)

            wallet = await lock_wallet(event.user_id, db)
            apply_daily_reset(wallet, now)
            before, after = credit_bonus_pool(wallet, credits, now)
            await append_credit_record(
                db,
                user_id=event.user_id,
                record_type=CreditRecordType.PURCHASE,
                amount=credits,
                balance_before=before,
                balance_after=after,
                pool=CreditPool.BONUS,
                metadata={"order_id": order_id, "package_id": package_id, "session_id": event.session_id},
                now=now,
            )

        logger.info("payment_credit_purchase user=%s credits=%s order=%s", event.user_id, credits, order_id)
        return HandledEvent(event_type=event.type, handled=True, user_id=event.user_id, credits=credits)

    async def _handle_subscription_reset(self, event: PaymentEvent, db: AsyncSession, now: datetime) -> HandledEvent:
        tier = _resolve_tier(event)
        expires_at = _resolve_expiry(event, now)

        async with atomic(db):
            order_id = await self._insert_order(
                db,
                event,
                package_id=f"subscription:{tier.value}",
                credits=0,
                now=now,
            )
            if order_id is None:
                logger.warning("payment_event_duplicate type=%s session=%s", event.type, event.session_id)
                return HandledEvent(event_type=event.type, handled=True, duplicate=True, user_id=event.user_id)

            wallet = await lock_wallet(event.user_id, db)
            apply_daily_reset(wallet, now)
            if event.type == SUBSCRIPTION_UPDATED and not _update_changes_allotment(wallet, tier, event, now):
                if event.expires_at is not None:
                    wallet.subscription_expires_at = expires_at
                if event.subscription_id:
                    wallet.subscription_id = event.subscription_id
                wallet.updated_at = now
                logger.info(
                    "payment_subscription_updated user=%s tier=%s pool_unchanged=true",
                    event.user_id,
                    tier.value,
                )
                return HandledEvent(event_type=event.type, handled=True, user_id=event.user_id)

            if event.type == SUBSCRIPTION_UPDATED and event.expires_at is None and wallet.subscription_expires_at:
                stored_expiry = as_utc(wallet.subscription_expires_at)
                if stored_expiry > now:
                    expires_at = stored_expiry
            before, after, previous = apply_subscription_reset(wallet, tier, expires_at, now)
            granted = int(wallet.subscription_credits)
            if event.subscription_id:
                wallet.subscription_id = event.subscription_id
            await append_credit_record(
                db,
                user_id=event.user_id,
                record_type=CreditRecordType.SUBSCRIPTION_RESET,
                amount=after - before,
                balance_before=before,
                balance_after=after,
                pool=CreditPool.SUBSCRIPTION,
                metadata={
                    "order_id": order_id,
                    "session_id": event.session_id,
                    "tier": tier.value,
                    "previous_credits": previous,
                    "expires_at": expires_at.isoformat(),
                },
                now=now,
            )

        logger.info(
            "payment_subscription_reset user=%s tier=%s credits=%s",
            event.user_id,
            tier.value,
            granted,
        )
        return HandledEvent(
            event_type=event.type,
            handled=True,
            user_id=event.user_id,
            credits=granted,
        )

    async def _handle_subscription_deleted(self, event: PaymentEvent, db: AsyncSession, now: datetime) -> HandledEvent:
        async with atomic(db):
            wallet = await lock_wallet(event.user_id, db)
            apply_daily_reset(wallet, now)
            apply_subscription_clear(wallet, now)

        logger.info("payment_subscription_cleared user=%s", event.user_id)
        return HandledEvent(event_type=event.type, handled=True, user_id=event.user_id)
