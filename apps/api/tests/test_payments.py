from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy import func, select

from models.credit_record import CreditRecord, CreditRecordType
from models.order import Order
from services.accounts import provision_account
from services.credits import consume, get_balance
from services.errors import PaymentEventError, UserNotFoundError
from services.payments import (
    CREDIT_PURCHASE_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
    PaymentEventHandler,
    StripePaymentProvider,
    stripe_event_to_payment_event,
)

UTC = timezone.utc
NOW = datetime(2025, 4, 2, 9, 30, tzinfo=UTC)
USER = "user-payments"
WEBHOOK_SECRET = "whsec_test_secret"


def _purchase(session_id="cs_test_1", credits="250", package_id="medium", user_id=USER):
    return PaymentEvent(
        type=CREDIT_PURCHASE_COMPLETED,
        session_id=session_id,
        user_id=user_id,
        metadata={"user_id": user_id, "package_id": package_id, "credits": credits},
        amount_total=1000,
    )


async def _count(db, model):
    return int((await db.execute(select(func.count()).select_from(model))).scalar())


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.mark.asyncio
async def test_credit_purchase_applies_once_under_redelivery(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    handler = PaymentEventHandler()

    first = await handler.handle(_purchase(), db, now=NOW)
    second = await handler.handle(_purchase(), db, now=NOW)

    assert first.handled is True and first.duplicate is False
    assert first.credits == 250
    assert second.handled is True and second.duplicate is True

    balance = await get_balance(USER, db, now=NOW)
    assert balance.bonus_credits == 250
    assert await _count(db, Order) == 1

    records = (await db.execute(select(CreditRecord))).scalars().all()
    assert len(records) == 1
    assert records[0].type == CreditRecordType.PURCHASE.value
    assert records[0].credit_pool == "bonus"
    assert records[0].metadata_json["session_id"] == "cs_test_1"
    assert records[0].metadata_json["package_id"] == "medium"

    order = (await db.execute(select(Order))).scalar_one()
    assert order.provider_session_id == "cs_test_1"
    assert order.credits == 250
    assert order.amount == 1000
    assert order.status == "completed"


@pytest.mark.asyncio
async def test_purchase_without_credits_uses_package_catalogue(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    event = _purchase(credits=None, package_id="large")
    event.metadata.pop("credits")

    result = await PaymentEventHandler().handle(event, db, now=NOW)

    assert result.credits == 600


@pytest.mark.asyncio
async def test_purchase_with_invalid_metadata_is_rejected(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    handler = PaymentEventHandler()

    with pytest.raises(PaymentEventError):
        await handler.handle(_purchase(credits="0"), db, now=NOW)
    with pytest.raises(PaymentEventError):
        await handler.handle(_purchase(credits="lots"), db, now=NOW)
    with pytest.raises(PaymentEventError):
        await handler.handle(_purchase(user_id=None), db, now=NOW)
    assert await _count(db, Order) == 0


@pytest.mark.asyncio
async def test_failed_purchase_rolls_back_order_so_redelivery_applies(db):
    handler = PaymentEventHandler()

    with pytest.raises(UserNotFoundError):
        await handler.handle(_purchase(session_id="cs_early"), db, now=NOW)
    assert await _count(db, Order) == 0

    await provision_account(USER, db, email="p@example.com", now=NOW)
    retried = await handler.handle(_purchase(session_id="cs_early"), db, now=NOW)

    assert retried.duplicate is False
    balance = await get_balance(USER, db, now=NOW)
    assert balance.bonus_credits == 250


@pytest.mark.asyncio
async def test_subscription_created_sets_tier_allotment(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    expires_at = NOW + timedelta(days=30)
    event = PaymentEvent(
        type=SUBSCRIPTION_CREATED,
        session_id="cs_sub_1",
        user_id=USER,
        metadata={"user_id": USER, "tier": "pro"},
        amount_total=2400,
        expires_at=expires_at,
        subscription_id="sub_123",
    )

    result = await PaymentEventHandler().handle(event, db, now=NOW)
    duplicate = await PaymentEventHandler().handle(event, db, now=NOW)

    assert result.credits == 2700
    assert duplicate.duplicate is True
    balance = await get_balance(USER, db, now=NOW)
    assert balance.tier == "pro"
    assert balance.subscription_credits == 2700
    assert balance.subscription_resets_at == expires_at

    records = (await db.execute(select(CreditRecord))).scalars().all()
    assert len(records) == 1
    record = records[0]
    assert record.type == CreditRecordType.SUBSCRIPTION_RESET.value
    assert (record.balance_before, record.amount, record.balance_after) == (0, 2700, 2700)
    assert record.metadata_json["tier"] == "pro"


@pytest.mark.asyncio
async def test_renewal_overwrites_leftover_subscription_credits(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    handler = PaymentEventHandler()
    await handler.handle(
        PaymentEvent(type=SUBSCRIPTION_CREATED, session_id="cs_sub_1", user_id=USER, metadata={"tier": "starter"}),
        db,
        now=NOW,
    )
    await consume(USER, db, cost=300, now=NOW)

    renewal_time = NOW + timedelta(days=31)
    await handler.handle(
        PaymentEvent(
            type=SUBSCRIPTION_RENEWED,
            session_id="in_renewal_1",
            user_id=USER,
            metadata={"tier": "starter"},
            expires_at=renewal_time + timedelta(days=31),
        ),
        db,
        now=renewal_time,
    )

    balance = await get_balance(USER, db, now=renewal_time)
    assert balance.subscription_credits == 1300
    records = (
        await db.execute(
            select(CreditRecord).where(CreditRecord.type == CreditRecordType.SUBSCRIPTION_RESET.value)
        )
    ).scalars().all()
    renewal = [r for r in records if r.metadata_json.get("session_id") == "in_renewal_1"][0]
    assert renewal.amount == 300
    assert renewal.metadata_json["previous_credits"] == 1000


@pytest.mark.asyncio
async def test_subscription_upgrade_and_cancellation(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    handler = PaymentEventHandler()
    await handler.handle(
        PaymentEvent(type=SUBSCRIPTION_CREATED, session_id="cs_sub_1", user_id=USER, metadata={"tier": "starter"}),
        db,
        now=NOW,
    )
    await handler.handle(
        PaymentEvent(type=SUBSCRIPTION_UPDATED, session_id="evt_upgrade", user_id=USER, metadata={"tier": "max"}),
        db,
        now=NOW,
    )
    upgraded = await get_balance(USER, db, now=NOW)
    assert upgraded.tier == "max"
    assert upgraded.subscription_credits == 30000

    records_before_cancel = await _count(db, CreditRecord)
    cancelled = await handler.handle(
        PaymentEvent(type=SUBSCRIPTION_DELETED, session_id="evt_cancel", user_id=USER),
        db,
        now=NOW,
    )

    assert cancelled.handled is True
    balance = await get_balance(USER, db, now=NOW)
    assert balance.tier == "free"
    assert balance.subscription_credits == 0
    assert balance.subscription_resets_at is None
    assert await _count(db, CreditRecord) == records_before_cancel


@pytest.mark.asyncio
async def test_mid_cycle_update_does_not_refill_subscription_pool(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    handler = PaymentEventHandler()
    period_end = NOW + timedelta(days=30)
    await handler.handle(
        PaymentEvent(
            type=SUBSCRIPTION_CREATED,
            session_id="cs_sub_1",
            user_id=USER,
            metadata={"tier": "pro"},
            expires_at=period_end,
        ),
        db,
        now=NOW,
    )
    spent = await consume(USER, db, cost=2700, now=NOW)
    assert spent.credits_consumed == 2700
    records_before = await _count(db, CreditRecord)

    # e.g. cancel_at_period_end toggled: same tier, same period
    toggled = await handler.handle(
        PaymentEvent(
            type=SUBSCRIPTION_UPDATED,
            session_id="evt_toggle_1",
            user_id=USER,
            metadata={"tier": "pro"},
            expires_at=period_end,
            subscription_id="sub_123",
        ),
        db,
        now=NOW + timedelta(days=1),
    )

    assert toggled.handled is True
    assert toggled.credits == 0
    balance = await get_balance(USER, db, now=NOW + timedelta(days=1))
    assert balance.tier == "pro"
    assert balance.subscription_credits == 0
    assert balance.subscription_resets_at == period_end
    assert await _count(db, CreditRecord) == records_before

    next_period_end = period_end + timedelta(days=30)
    advanced = await handler.handle(
        PaymentEvent(
            type=SUBSCRIPTION_UPDATED,
            session_id="evt_period_2",
            user_id=USER,
            metadata={"tier": "pro"},
            expires_at=next_period_end,
        ),
        db,
        now=period_end,
    )

    assert advanced.credits == 2700
    balance = await get_balance(USER, db, now=period_end)
    assert balance.subscription_credits == 2700
    assert balance.subscription_resets_at == next_period_end


@pytest.mark.asyncio
async def test_subscription_with_unknown_tier_is_rejected(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    with pytest.raises(PaymentEventError):
        await PaymentEventHandler().handle(
            PaymentEvent(type=SUBSCRIPTION_CREATED, session_id="cs_x", user_id=USER, metadata={"tier": "gold"}),
            db,
            now=NOW,
        )
    assert await _count(db, Order) == 0


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(db):
    result = await PaymentEventHandler().handle(
        PaymentEvent(type="refund.created", session_id="re_1", user_id=USER),
        db,
        now=NOW,
    )
    assert result.handled is False


def test_stripe_checkout_events_map_to_purchase_and_subscription():
    purchase = stripe_event_to_payment_event(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "mode": "payment",
                    "amount_total": 500,
                    "currency": "usd",
                    "client_reference_id": USER,
                    "metadata": {"package_id": "small", "credits": "100"},
                }
            },
        }
    )
    assert purchase.type == CREDIT_PURCHASE_COMPLETED
    assert purchase.session_id == "cs_1"
    assert purchase.user_id == USER
    assert purchase.amount_total == 500

    subscription = stripe_event_to_payment_event(
        {
            "id": "evt_2",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_2",
                    "mode": "subscription",
                    "subscription": "sub_9",
                    "metadata": {"user_id": USER, "tier": "pro"},
                }
            },
        }
    )
    assert subscription.type == SUBSCRIPTION_CREATED
    assert subscription.subscription_id == "sub_9"


def test_stripe_subscription_events_map_to_update_renewal_and_delete():
    period_end = int(datetime(2025, 5, 2, tzinfo=UTC).timestamp())
    updated = stripe_event_to_payment_event(
        {
            "id": "evt_3",
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_9",
                    "status": "active",
                    "current_period_end": period_end,
                    "metadata": {"user_id": USER, "tier": "max"},
                }
            },
        }
    )
    assert updated.type == SUBSCRIPTION_UPDATED
    assert updated.session_id == "evt_3"
    assert updated.expires_at == datetime(2025, 5, 2, tzinfo=UTC)

    lapsed = stripe_event_to_payment_event(
        {
            "id": "evt_4",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_9", "status": "canceled", "metadata": {"user_id": USER}}},
        }
    )
    assert lapsed.type == SUBSCRIPTION_DELETED

    renewal = stripe_event_to_payment_event(
        {
            "id": "evt_5",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "id": "in_1",
                    "billing_reason": "subscription_cycle",
                    "amount_paid": 2400,
                    "subscription_details": {"metadata": {"user_id": USER, "tier": "pro"}},
                    "lines": {"data": [{"period": {"end": period_end}}]},
                }
            },
        }
    )
    assert renewal.type == SUBSCRIPTION_RENEWED
    assert renewal.user_id == USER
    assert renewal.metadata["tier"] == "pro"

    first_invoice = stripe_event_to_payment_event(
        {"id": "evt_6", "type": "invoice.paid", "data": {"object": {"billing_reason": "subscription_create"}}}
    )
    assert first_invoice is None
    assert stripe_event_to_payment_event({"id": "evt_7", "type": "charge.refunded", "data": {"object": {}}}) is None


@pytest.mark.asyncio
async def test_webhook_verifies_stripe_signature(db):
    await provision_account(USER, db, email="p@example.com", now=NOW)
    provider = StripePaymentProvider(
        api_key="sk_test_dummy",
        webhook_secret=WEBHOOK_SECRET,
        success_url="http://localhost/success",
        cancel_url="http://localhost/cancel",
    )
    handler = PaymentEventHandler(provider)
    payload = json.dumps(
        {
            "id": "evt_webhook",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_webhook",
                    "mode": "payment",
                    "amount_total": 500,
                    "metadata": {"user_id": USER, "package_id": "small", "credits": "100"},
                }
            },
        }
    ).encode()

    with pytest.raises(PaymentEventError):
        await handler.handle_webhook(payload, _sign(payload, "whsec_wrong"), db, now=NOW)

    result = await handler.handle_webhook(payload, _sign(payload), db, now=NOW)
    assert result.handled is True
    balance = await get_balance(USER, db, now=NOW)
    assert balance.bonus_credits == 100


@pytest.mark.asyncio
async def test_webhook_without_provider_is_rejected(db):
    with pytest.raises(PaymentEventError) as exc_info:
        await PaymentEventHandler().handle_webhook(b"{}", "sig", db, now=NOW)
    assert exc_info.value.code == "PROVIDER_NOT_CONFIGURED"
