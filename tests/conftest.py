import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from ticketing_engine.config import Settings
from ticketing_engine.engine import TicketingEngine
from ticketing_engine.main import create_app
from ticketing_engine.models.order import BuyerDetails, GatewaySignaturePayload
from ticketing_engine.models.reservation import ReservationItem
from ticketing_engine.models.tier import TierCreate
from ticketing_engine.store import MemoryConditionalStore
from ticketing_engine.utils.auth_utils import create_access_token
from ticketing_engine.utils.payments import PaymentGateway

EVENT_ID = "evt-1"
BUYER = BuyerDetails(name="Asha Rao", email="asha@example.com")


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def gateway_handler(request: httpx.Request) -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json={
        "id": f"order_test_{payload['receipt']}",
        "amount": payload["amount"],
        "currency": payload["currency"],
        "receipt": payload["receipt"],
        "status": "created",
    })


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        sweep_interval_seconds=0,
        jwt_secret_key="test-jwt-secret",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        ticket_qr_secret="test-qr-secret",
    )


@pytest.fixture
def store():
    return MemoryConditionalStore()


@pytest.fixture
def gateway(settings):
    return PaymentGateway(settings.razorpay_key_id, settings.razorpay_key_secret,
                          transport=httpx.MockTransport(gateway_handler))


@pytest.fixture
def engine(store, settings, clock, gateway):
    return TicketingEngine(store, settings, clock=clock, gateway=gateway)


@pytest.fixture
async def seeded(engine):
    """Two tiers on EVENT_ID: general (1000 x 10) and vip (2500 x 2)."""
    await engine.ledger.create_tier(EVENT_ID, TierCreate(tier_id="general", name="General", price=Decimal("1000"), capacity=10))
    await engine.ledger.create_tier(EVENT_ID, TierCreate(tier_id="vip", name="VIP", price=Decimal("2500"), capacity=2, max_per_order=2))
    return engine


def signed_payload(engine: TicketingEngine, gateway_order_id: str, payment_id: str = "pay_001") -> GatewaySignaturePayload:
    return GatewaySignaturePayload(
        gateway_order_id=gateway_order_id,
        payment_id=payment_id,
        signature=engine.gateway.expected_signature(gateway_order_id, payment_id),
    )


async def buy(engine: TicketingEngine, user_id: str, tier_id: str = "general", quantity: int = 2):
    """Reserve, check out and pay; returns the confirmed order."""
    reservation = await engine.reservations.reserve(EVENT_ID, [ReservationItem(tier_id=tier_id, quantity=quantity)],
                                                    customer_id=user_id)
    response = await engine.checkout.initiate_checkout(reservation.id, user_id, BUYER)
    return await engine.checkout.verify_payment(
        response.order.id, signed_payload(engine, response.order.gateway_order_id)
    )


@pytest.fixture
def client(engine):
    app = create_app(engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings):
    def make(user_id: str, role: str = "customer", email: str = None):
        claims = {"sub": user_id, "role": role}
        if email:
            claims["email"] = email
        token = create_access_token(claims, settings)
        return {"Authorization": f"Bearer {token}"}
    return make
