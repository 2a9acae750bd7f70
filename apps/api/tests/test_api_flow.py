import json

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from config import settings
from database import get_db
from main import app
from routers.webhooks import get_payment_handler
from services.accounts import provision_account
from services.payments import (
    CREDIT_PURCHASE_COMPLETED,
    CheckoutSession,
    PaymentEvent,
    PaymentEventHandler,
)
from services.session_token import create_session_token

USER = "api-user"
ADMIN = "api-admin"


class FakeProvider:
    """Accepts unsigned JSON events and records checkout requests."""

    def __init__(self):
        self.checkouts = []

    def parse_event(self, payload, signature):
        data = json.loads(payload)
        return PaymentEvent(
            type=data["type"],
            session_id=data["session_id"],
            user_id=data.get("user_id"),
            metadata=data.get("metadata", {}),
            amount_total=data.get("amount_total", 0),
        )

    def create_checkout_session(self, user_id, package, customer_email=None):
        self.checkouts.append((user_id, package.id, customer_email))
        return CheckoutSession(session_id=f"cs_fake_{len(self.checkouts)}", checkout_url="https://pay.test/session")


@pytest_asyncio.fixture
async def integration_client(session_maker):
    provider = FakeProvider()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_handler] = lambda: PaymentEventHandler(provider)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, provider

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_handler, None)


def _auth_headers(user_id=USER):
    token = create_session_token(user_id, email=f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


async def _register(client, user_id=USER):
    response = await client.post(
        "/user/register",
        json={"email": f"{user_id}@example.com", "name": user_id},
        headers=_auth_headers(user_id),
    )
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_liveness_probe(integration_client):
    client, _session_maker, _provider = integration_client

    live = await client.get("/health/live")
    assert live.status_code == 200
    assert live.json() == {"alive": True}


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(integration_client):
    client, _session_maker, _provider = integration_client

    response = await client.get("/credits/balance")
    assert response.status_code == 401

    bad = await client.get("/credits/balance", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


@pytest.mark.asyncio
async def test_register_login_consume_and_history(integration_client):
    client, _session_maker, _provider = integration_client

    registered = await _register(client)
    assert registered["created"] is True
    assert registered["total_credits"] == 50
    again = await _register(client)
    assert again["created"] is False
    assert again["total_credits"] == 50

    me = await client.get("/user/me", headers=_auth_headers())
    assert me.json()["total_credits"] == 50

    login = await client.post("/credits/daily-login", headers=_auth_headers())
    assert login.status_code == 200
    assert login.json()["daily_credits"] == 50

    reserve = await client.get("/credits/reserve", headers=_auth_headers())
    assert reserve.status_code == 200
    assert reserve.json()["allowed"] is True

    consumed = await client.post(
        "/credits/consume",
        json={"cost": 70, "task_id": "task-1", "model_id": "model-a", "total_tokens": 1234},
        headers=_auth_headers(),
    )
    assert consumed.status_code == 200
    body = consumed.json()
    assert body["credits_consumed"] == 50
    assert body["shortfall"] == 20
    assert body["partial"] is True
    assert body["balance"]["total_available"] == 0

    reserve = await client.get("/credits/reserve", headers=_auth_headers())
    assert reserve.status_code == 402
    assert reserve.json()["code"] == "INSUFFICIENT_CREDITS"

    records = await client.get("/credits/records", headers=_auth_headers())
    assert records.status_code == 200
    payload = records.json()
    assert payload["total"] == 2
    assert sorted(r["type"] for r in payload["records"]) == ["daily_login", "generation"]
    generation = [r for r in payload["records"] if r["type"] == "generation"][0]
    assert generation["metadata"]["task_id"] == "task-1"
    assert generation["metadata"]["shortfall"] == 20

    filtered = await client.get("/credits/records?type=daily_login", headers=_auth_headers())
    assert filtered.json()["total"] == 1


@pytest.mark.asyncio
async def test_cross_user_scope_is_forbidden(integration_client):
    client, _session_maker, _provider = integration_client
    await _register(client)

    response = await client.get("/credits/balance", params={"user_id": "someone-else"}, headers=_auth_headers())
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unregistered_user_gets_not_found_code(integration_client):
    client, _session_maker, _provider = integration_client

    response = await client.get("/credits/balance", headers=_auth_headers("never-registered"))
    assert response.status_code == 404
    assert response.json() == {"detail": "User never-registered not found", "code": "USER_NOT_FOUND"}


@pytest.mark.asyncio
async def test_webhook_purchase_is_idempotent_over_http(integration_client):
    client, _session_maker, _provider = integration_client
    await _register(client)
    event = {
        "type": CREDIT_PURCHASE_COMPLETED,
        "session_id": "cs_http_1",
        "user_id": USER,
        "metadata": {"package_id": "small", "credits": "100"},
        "amount_total": 500,
    }

    first = await client.post("/webhooks/stripe", content=json.dumps(event), headers={"stripe-signature": "t=1,v1=x"})
    second = await client.post("/webhooks/stripe", content=json.dumps(event), headers={"stripe-signature": "t=1,v1=x"})

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    balance = await client.get("/credits/balance", headers=_auth_headers())
    assert balance.json()["bonus_credits"] == 100

    orders = await client.get("/billing/orders", headers=_auth_headers())
    assert [order["credits"] for order in orders.json()["orders"]] == [100]


@pytest.mark.asyncio
async def test_webhook_with_invalid_event_returns_code(integration_client):
    client, _session_maker, _provider = integration_client
    event = {"type": CREDIT_PURCHASE_COMPLETED, "session_id": "cs_bad", "user_id": None}

    response = await client.post("/webhooks/stripe", content=json.dumps(event))

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_EVENT"


@pytest.mark.asyncio
async def test_billing_catalogue_checkout_and_subscription(integration_client, monkeypatch):
    client, _session_maker, provider = integration_client
    await _register(client)

    packages = await client.get("/billing/packages")
    assert [p["id"] for p in packages.json()["packages"]] == ["small", "medium", "large"]
    plans = await client.get("/billing/plans")
    assert [p["subscription_credits"] for p in plans.json()["plans"]] == [0, 1300, 2700, 30000]

    monkeypatch.setattr(settings, "BILLING_ENABLED", False)
    disabled = await client.post("/billing/checkout", json={"package_id": "small"}, headers=_auth_headers())
    assert disabled.status_code == 503

    monkeypatch.setattr(settings, "BILLING_ENABLED", True)
    monkeypatch.setattr(app.state, "payment_provider", provider, raising=False)
    unknown = await client.post("/billing/checkout", json={"package_id": "huge"}, headers=_auth_headers())
    assert unknown.status_code == 400

    checkout = await client.post("/billing/checkout", json={"package_id": "medium"}, headers=_auth_headers())
    assert checkout.status_code == 200
    assert checkout.json()["checkout_url"] == "https://pay.test/session"
    assert provider.checkouts == [(USER, "medium", f"{USER}@example.com")]

    subscription = await client.get("/billing/subscription", headers=_auth_headers())
    assert subscription.status_code == 200
    assert subscription.json()["tier"] == "free"
    assert subscription.json()["is_paid"] is False


@pytest.mark.asyncio
async def test_referral_flow_over_http(integration_client):
    client, _session_maker, _provider = integration_client
    await _register(client, "inviter")
    await _register(client, "invitee")

    applied = await client.post(
        "/referral/apply",
        json={"referral_code": "inviter"},
        headers={**_auth_headers("invitee"), "x-real-ip": "203.0.113.9"},
    )
    assert applied.status_code == 200
    assert applied.json()["credits_received"] == 30

    repeated = await client.post("/referral/apply", json={"referral_code": "inviter"}, headers=_auth_headers("invitee"))
    assert repeated.status_code == 400
    assert repeated.json()["code"] == "ALREADY_APPLIED"

    own = await client.post("/referral/apply", json={"referral_code": "inviter"}, headers=_auth_headers("inviter"))
    assert own.json()["code"] == "SELF_REFERRAL"

    stats = await client.get("/referral/stats", headers=_auth_headers("inviter"))
    assert stats.json()["total_referrals"] == 1
    history = await client.get("/referral/history", headers=_auth_headers("inviter"))
    assert len(history.json()["referrals"]) == 1


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(integration_client):
    client, session_maker, _provider = integration_client
    await _register(client)
    async with session_maker() as session:
        await provision_account(ADMIN, session, email="admin@example.com", role="admin")

    forbidden = await client.get("/admin/check", headers=_auth_headers(USER))
    assert forbidden.status_code == 403

    check = await client.get("/admin/check", headers=_auth_headers(ADMIN))
    assert check.status_code == 200
    assert check.json()["is_admin"] is True

    search = await client.get("/admin/users/search", params={"email": "api-user"}, headers=_auth_headers(ADMIN))
    assert [u["id"] for u in search.json()["users"]] == [USER]

    invalid = await client.post(
        "/admin/credits/grant",
        json={"user_id": USER, "amount": 0, "reason": "nope"},
        headers=_auth_headers(ADMIN),
    )
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "VALIDATION_ERROR"

    granted = await client.post(
        "/admin/credits/grant",
        json={"user_id": USER, "amount": 250, "reason": "beta tester"},
        headers=_auth_headers(ADMIN),
    )
    assert granted.status_code == 200
    assert granted.json()["bonus_credits"] == 250

    records = await client.get(
        "/admin/credits/records",
        params={"user_id": USER, "type": "admin_grant"},
        headers=_auth_headers(ADMIN),
    )
    assert records.json()["total"] == 1
    assert records.json()["records"][0]["metadata"]["admin_id"] == ADMIN


@pytest.mark.asyncio
async def test_consume_is_rate_limited_per_user(integration_client):
    client, _session_maker, _provider = integration_client
    await _register(client)
    app.state.disable_rate_limits = False

    statuses = []
    for _ in range(11):
        response = await client.post("/credits/consume", json={"cost": 0}, headers=_auth_headers())
        statuses.append(response.status_code)

    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
    assert int(response.headers["retry-after"]) >= 1
    assert response.json()["detail"]["code"] == "RATE_LIMITED"

    other = await _register(client, "other-user")
    assert other["created"] is True
    other_consume = await client.post("/credits/consume", json={"cost": 0}, headers=_auth_headers("other-user"))
    assert other_consume.status_code == 200
