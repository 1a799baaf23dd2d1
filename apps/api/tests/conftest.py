import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.coupon import Coupon
from routers import client_guard
from services.bundles import build_bundle_catalog, get_bundle_catalog
from services.session_token import create_session_token
from services.stripe_gateway import StripeGateway, get_optional_stripe_gateway, get_stripe_gateway


WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    """Stripe gateway that keeps everything in memory but verifies signatures for real."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, tolerance_seconds=300)
        self.created_sessions = []
        self.created_coupons = []
        self.coupons: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.checkout_error: Optional[Exception] = None
        self.coupon_error: Optional[Exception] = None
        self.coupon_lookups = 0

    def create_checkout_session(self, params):
        if self.checkout_error is not None:
            raise self.checkout_error
        self.created_sessions.append(params)
        session_id = f"cs_test_{len(self.created_sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/pay/{session_id}"}

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", "id")
        return self.sessions[session_id]

    def retrieve_coupon(self, coupon_id):
        self.coupon_lookups += 1
        if self.coupon_error is not None:
            raise self.coupon_error
        return self.coupons.get(coupon_id)

    def create_coupon(self, coupon_id, params):
        self.created_coupons.append((coupon_id, params))
        coupon = {"id": coupon_id, "valid": True}
        coupon.update(params)
        self.coupons[coupon_id] = coupon
        return coupon

    def retrieve_price(self, price_id):
        return self.prices[price_id]


def auth_header(user_id: str, role: str = "user", email: Optional[str] = None) -> Dict[str, str]:
    token = create_session_token(user_id, email or f"{user_id}@example.com", role=role)["token"]
    return {"Authorization": f"Bearer {token}"}


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(
    event_id: str,
    *,
    session_id: str = "cs_test_paid",
    user_id: Optional[str] = "buyer-1",
    bundle_id: str = "starter",
    credit_count: Optional[int] = None,
    amount_subtotal: int = 499,
    discount_amount: int = 0,
    payment_status: str = "paid",
    coupon_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
    event_type: str = "checkout.session.completed",
) -> Dict[str, Any]:
    metadata = {"bundle_id": bundle_id}
    if user_id is not None:
        metadata["user_id"] = user_id
    if credit_count is not None:
        metadata["credit_count"] = str(credit_count)
    if coupon_id:
        metadata["coupon_id"] = coupon_id
    if coupon_code:
        metadata["coupon_code"] = coupon_code
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "payment_intent": f"pi_{session_id}",
                "amount_subtotal": amount_subtotal,
                "amount_total": amount_subtotal - discount_amount,
                "total_details": {"amount_discount": discount_amount},
                "currency": "eur",
                "customer_details": {"email": "buyer@example.com"},
                "metadata": metadata,
            }
        },
    }


async def post_webhook(client: AsyncClient, event: Dict[str, Any], signature: Optional[str] = None):
    payload = json.dumps(event)
    return await client.post(
        "/api/stripe/webhook",
        content=payload,
        headers={
            "content-type": "application/json",
            "stripe-signature": signature if signature is not None else sign_payload(payload),
        },
    )


def make_coupon(code: str = "SAVE10", **overrides) -> Coupon:
    values = {
        "code": code,
        "name": f"{code} discount",
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
        "currency": "eur",
        "minimum_amount": 0,
        "usage_count": 0,
        "single_use_per_user": True,
        "is_public": True,
        "is_active": True,
    }
    values.update(overrides)
    return Coupon(**values)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    client_guard._fallback_windows.clear()
    yield
    client_guard._fallback_windows.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def stripe_fake():
    return FakeStripeGateway()


@pytest_asyncio.fixture
async def billing_client(session_maker, stripe_fake):
    catalog = build_bundle_catalog(settings)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_fake
    app.dependency_overrides[get_optional_stripe_gateway] = lambda: stripe_fake
    app.dependency_overrides[get_bundle_catalog] = lambda: catalog
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, stripe_fake

    for dependency in (get_db, get_stripe_gateway, get_optional_stripe_gateway, get_bundle_catalog):
        app.dependency_overrides.pop(dependency, None)
