import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base, get_db
from main import app
from models.account import Account
from models.transaction import Transaction
from routers.deps import get_paypal_client, get_razorpay_client
from services.payment_gateways import PayPalClient, RazorpayClient
from services.payments import compute_credits
from services.session_token import create_session_token


PAY_ACCOUNT_ID = "pay-account"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(PAY_ACCOUNT_ID, 'payer@example.com')['token']}"}
RAZORPAY_SECRET = "rzp_test_secret"


def _sign(order_id: str, payment_id: str) -> str:
    return hmac.new(RAZORPAY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def _paypal_capture(value: str, status: str = "COMPLETED") -> dict:
    return {
        "id": "ORDER-1",
        "status": status,
        "purchase_units": [
            {"payments": {"captures": [{"id": "CAP-1", "amount": {"value": value, "currency_code": "USD"}}]}}
        ],
    }


class _FakeGateways:
    def __init__(self):
        self.calls = []
        self.capture_body = _paypal_capture("20.00")
        self.payments = {
            "pay_1": {"id": "pay_1", "order_id": "order_1", "amount": 33300, "currency": "INR", "status": "captured"},
        }

    def paypal(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token"})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={"id": "ORDER-1", "status": "CREATED"})
        if path.endswith("/capture"):
            return httpx.Response(201, json=self.capture_body)
        return httpx.Response(404)

    def razorpay(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/v1/orders":
            return httpx.Response(200, json={"id": "order_new", "status": "created"})
        if path.startswith("/v1/payments/"):
            payment_id = path.split("/")[3]
            payment = self.payments.get(payment_id)
            if payment is None:
                return httpx.Response(404, json={"error": {"code": "BAD_REQUEST_ERROR"}})
            if path.endswith("/capture"):
                payment = {**payment, "status": "captured"}
                self.payments[payment_id] = payment
            return httpx.Response(200, json=payment)
        return httpx.Response(404)


@pytest_asyncio.fixture
async def payments_client(tmp_path):
    db_path = tmp_path / "payments.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    gateways = _FakeGateways()
    paypal = PayPalClient("https://paypal.test", "paypal-id", "paypal-secret", transport=httpx.MockTransport(gateways.paypal))
    razorpay = RazorpayClient(
        "https://razorpay.test",
        "rzp_test_key",
        RAZORPAY_SECRET,
        transport=httpx.MockTransport(gateways.razorpay),
    )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_paypal_client] = lambda: paypal
    app.dependency_overrides[get_razorpay_client] = lambda: razorpay
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, gateways

    for dependency in (get_db, get_paypal_client, get_razorpay_client):
        app.dependency_overrides.pop(dependency, None)
    await paypal.aclose()
    await razorpay.aclose()
    await engine.dispose()


async def _balance(session_maker) -> int:
    async with session_maker() as db:
        result = await db.execute(select(Account.credits).where(Account.id == PAY_ACCOUNT_ID))
        return result.scalar_one()


async def _purchases(session_maker):
    async with session_maker() as db:
        result = await db.execute(
            select(Transaction).where(
                Transaction.account_id == PAY_ACCOUNT_ID,
                Transaction.provider.in_(("paypal", "razorpay")),
            )
        )
        return list(result.scalars().all())


def test_compute_credits_floors_in_decimal():
    assert compute_credits("20.00", "USD") == 1000
    assert compute_credits(333, "INR") == 199
    assert compute_credits(Decimal("1"), "INR") == 0
    assert compute_credits("0.019", "usd") == 0


@pytest.mark.asyncio
async def test_paypal_top_up_credits_once(payments_client):
    client, session_maker, gateways = payments_client

    response = await client.post("/api/payments/capture-order", json={"orderID": "ORDER-1"}, headers=AUTH_HEADER)

    assert response.status_code == 200
    assert response.json() == {"success": True, "creditsAdded": 1000, "alreadySettled": False}
    assert await _balance(session_maker) == 5 + 1000

    rows = await _purchases(session_maker)
    assert len(rows) == 1
    assert rows[0].status == "completed"
    assert rows[0].provider == "paypal"
    assert rows[0].amount == 20.0
    assert rows[0].currency == "USD"
    assert rows[0].credits == 1000

    replay = await client.post("/api/payments/capture-order", json={"orderID": "ORDER-1"}, headers=AUTH_HEADER)

    assert replay.status_code == 200
    assert replay.json() == {"success": True, "creditsAdded": 1000, "alreadySettled": True}
    assert await _balance(session_maker) == 5 + 1000
    assert len(await _purchases(session_maker)) == 1
    assert sum(1 for call in gateways.calls if call.url.path.endswith("/capture")) == 1


@pytest.mark.asyncio
async def test_paypal_capture_not_completed(payments_client):
    client, session_maker, gateways = payments_client
    gateways.capture_body = _paypal_capture("20.00", status="PAYER_ACTION_REQUIRED")

    response = await client.post("/api/payments/capture-order", json={"orderID": "ORDER-1"}, headers=AUTH_HEADER)

    assert response.status_code == 400
    assert response.json()["code"] == "PAYMENT_NOT_COMPLETED"
    assert await _balance(session_maker) == 5
    assert await _purchases(session_maker) == []


@pytest.mark.asyncio
async def test_create_order_enforces_minimum(payments_client):
    client, _, gateways = payments_client

    response = await client.post("/api/payments/create-order", json={"amount": 2}, headers=AUTH_HEADER)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid amount. Minimum is $5.", "code": "INVALID_AMOUNT"}
    assert gateways.calls == []


@pytest.mark.asyncio
async def test_create_order_routes_by_currency(payments_client):
    client, _, gateways = payments_client

    paypal_order = await client.post("/api/payments/create-order", json={"amount": "10"}, headers=AUTH_HEADER)
    razorpay_order = await client.post(
        "/api/payments/create-order",
        json={"amount": 499, "currency": "INR"},
        headers=AUTH_HEADER,
    )

    assert paypal_order.json() == {"id": "ORDER-1"}
    assert razorpay_order.json() == {"id": "order_new"}

    paypal_body = json.loads(next(c for c in gateways.calls if c.url.path == "/v2/checkout/orders").content)
    assert paypal_body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "10.00"}
    razorpay_body = json.loads(next(c for c in gateways.calls if c.url.path == "/v1/orders").content)
    assert razorpay_body["amount"] == 49900
    assert razorpay_body["currency"] == "INR"


@pytest.mark.asyncio
async def test_razorpay_verify_credits_captured_amount(payments_client):
    client, session_maker, _ = payments_client

    response = await client.post(
        "/api/payments/verify",
        json={"orderId": "order_1", "paymentId": "pay_1", "signature": _sign("order_1", "pay_1"), "amount": 333},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    assert response.json()["creditsAdded"] == 199
    assert await _balance(session_maker) == 5 + 199

    rows = await _purchases(session_maker)
    assert [(row.provider, row.provider_transaction_id, row.currency) for row in rows] == [
        ("razorpay", "pay_1", "INR")
    ]


@pytest.mark.asyncio
async def test_razorpay_ignores_inflated_client_amount(payments_client):
    client, session_maker, _ = payments_client

    response = await client.post(
        "/api/payments/verify",
        json={"orderId": "order_1", "paymentId": "pay_1", "signature": _sign("order_1", "pay_1"), "amount": 333000},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    assert response.json()["creditsAdded"] == 199
    assert await _balance(session_maker) == 5 + 199


@pytest.mark.asyncio
async def test_razorpay_tampered_signature_is_rejected(payments_client):
    client, session_maker, gateways = payments_client

    response = await client.post(
        "/api/payments/verify",
        json={"orderId": "order_1", "paymentId": "pay_1", "signature": _sign("order_1", "pay_other"), "amount": 333},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid Signature", "code": "INVALID_SIGNATURE"}
    assert gateways.calls == []
    assert await _balance(session_maker) == 5
    assert await _purchases(session_maker) == []


@pytest.mark.asyncio
async def test_razorpay_payment_from_another_order_is_rejected(payments_client):
    client, session_maker, _ = payments_client

    response = await client.post(
        "/api/payments/verify",
        json={"orderId": "order_2", "paymentId": "pay_1", "signature": _sign("order_2", "pay_1")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "PAYMENT_NOT_COMPLETED"
    assert await _balance(session_maker) == 5


@pytest.mark.asyncio
async def test_razorpay_authorized_payment_is_captured(payments_client):
    client, session_maker, gateways = payments_client
    gateways.payments["pay_2"] = {
        "id": "pay_2",
        "order_id": "order_2",
        "amount": 100000,
        "currency": "INR",
        "status": "authorized",
    }

    response = await client.post(
        "/api/payments/verify",
        json={"orderId": "order_2", "paymentId": "pay_2", "signature": _sign("order_2", "pay_2")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    assert response.json()["creditsAdded"] == 600
    assert any(call.url.path == "/v1/payments/pay_2/capture" for call in gateways.calls)
