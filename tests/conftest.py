"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- An in-memory payment API with real compare-and-swap semantics
- Signed webhook deliveries and event/session factories
"""
# Settings are read when app modules are imported, so the environment must be in place first
import os
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_testing_only")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_for_testing_only")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "100000")

import copy
import hashlib
import hmac
import itertools
import json
import time
from collections import Counter, defaultdict
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.exceptions import ExternalApiError
from app.db.database import Base, get_db
from app.domain.events import CheckoutSession, CheckoutSessionCompleted, EventEnvelope
from app.domain.metadata import parse_int
from app.domain.services.payment_api import (
    CUSTOMER_VERSION_KEY,
    PRODUCT_VERSION_KEY,
    get_payment_api,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_URL = "/api/webhooks/stripe"

_event_counter = itertools.count(1)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake payment API
# ============================================================================

class FakePaymentApi:
    """In-memory stand-in for PaymentApiClient.

    Compare-and-swap is exact here: the version check and the write happen
    in one step. ``fail_next`` queues errors per operation name and
    ``race_product`` / ``race_customer`` simulate a concurrent writer that
    bumps the version right before our write.
    ``lose_response`` lets a write land and then raises, like a reply lost
    on the way back.
    """

    def __init__(self) -> None:
        self.products: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.payment_intents: dict[str, dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._lost_responses: dict[str, list[BaseException]] = defaultdict(list)
        self._product_races: Counter = Counter()
        self._customer_races: Counter = Counter()
        self._customer_ids = itertools.count(1)

    # ---- test controls ----

    def add_product(
        self,
        product_id: str | None = None,
        inventory: int | None = 1000,
        version: int | None = 0,
        product_type: str | None = "limited_edition",
        **extra_metadata: str,
    ) -> dict[str, Any]:
        product_id = product_id or settings.LIMITED_EDITION_PRODUCT_ID
        metadata: dict[str, str] = dict(extra_metadata)
        if product_type is not None:
            metadata["type"] = product_type
        if inventory is not None:
            metadata["inventory"] = str(inventory)
        if version is not None:
            metadata[PRODUCT_VERSION_KEY] = str(version)
        self.products[product_id] = {"id": product_id, "name": "Limited Edition Card", "metadata": metadata}
        return self.products[product_id]

    def add_customer(self, email: str, metadata: dict[str, str] | None = None, name: str | None = None) -> dict[str, Any]:
        customer_id = f"cus_test_{next(self._customer_ids)}"
        self.customers[customer_id] = {
            "id": customer_id,
            "email": email,
            "name": name,
            "metadata": dict(metadata or {}),
        }
        return self.customers[customer_id]

    def customer_by_email(self, email: str) -> dict[str, Any] | None:
        for customer in self.customers.values():
            if customer["email"] == email:
                return customer
        return None

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        self._failures[operation].extend(errors)

    def lose_response(self, operation: str, *errors: BaseException) -> None:
        self._lost_responses[operation].extend(errors)

    def race_product(self, product_id: str, times: int = 1) -> None:
        self._product_races[product_id] += times

    def race_customer(self, customer_id: str, times: int = 1) -> None:
        self._customer_races[customer_id] += times

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _after_write(self, operation: str) -> None:
        if self._lost_responses[operation]:
            raise self._lost_responses[operation].pop(0)

    # ---- PaymentApiClient surface ----

    async def retrieve_product(self, product_id: str) -> dict[str, Any]:
        self._enter("retrieve_product")
        if product_id not in self.products:
            raise ExternalApiError("stripe", f"No such product: {product_id}")
        return copy.deepcopy(self.products[product_id])

    async def compare_and_swap_product_metadata(
        self,
        product_id: str,
        expected_version: int,
        metadata: dict[str, str],
    ) -> bool:
        self._enter("compare_and_swap_product_metadata")
        product = self.products[product_id]
        if self._product_races[product_id] > 0:
            self._product_races[product_id] -= 1
            current = parse_int(product["metadata"].get(PRODUCT_VERSION_KEY), 0)
            product["metadata"][PRODUCT_VERSION_KEY] = str(current + 1)
        if parse_int(product["metadata"].get(PRODUCT_VERSION_KEY), 0) != expected_version:
            return False
        product["metadata"] = dict(metadata)
        self._after_write("compare_and_swap_product_metadata")
        return True

    async def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        self._enter("find_customer_by_email")
        customer = self.customer_by_email(email)
        return copy.deepcopy(customer) if customer else None

    async def create_customer(self, email: str, name: str | None, metadata: dict[str, str]) -> dict[str, Any]:
        self._enter("create_customer")
        created = copy.deepcopy(self.add_customer(email, metadata, name))
        self._after_write("create_customer")
        return created

    async def compare_and_swap_customer_metadata(
        self,
        customer_id: str,
        expected_version: int,
        metadata: dict[str, str],
        name: str | None = None,
    ) -> bool:
        self._enter("compare_and_swap_customer_metadata")
        customer = self.customers[customer_id]
        if self._customer_races[customer_id] > 0:
            self._customer_races[customer_id] -= 1
            current = parse_int(customer["metadata"].get(CUSTOMER_VERSION_KEY), 0)
            customer["metadata"][CUSTOMER_VERSION_KEY] = str(current + 1)
        if parse_int(customer["metadata"].get(CUSTOMER_VERSION_KEY), 0) != expected_version:
            return False
        customer["metadata"] = dict(metadata)
        if name:
            customer["name"] = name
        self._after_write("compare_and_swap_customer_metadata")
        return True

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        self._enter("retrieve_payment_intent")
        if payment_intent_id not in self.payment_intents:
            raise ExternalApiError("stripe", f"No such payment_intent: {payment_intent_id}")
        return copy.deepcopy(self.payment_intents[payment_intent_id])


@pytest.fixture
def fake_payment_api() -> FakePaymentApi:
    api = FakePaymentApi()
    api.add_product()
    return api


@pytest.fixture
async def test_client(db_session: AsyncSession, fake_payment_api: FakePaymentApi):
    """Create test client with database and payment API overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_api] = lambda: fake_payment_api

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Retry sleep
# ============================================================================

@pytest.fixture(autouse=True)
def retry_sleep():
    """Backoff delays are recorded, not slept"""
    with patch("app.core.retry._sleep_ms", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


# ============================================================================
# Event factories
# ============================================================================

def sign_payload(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a stripe-signature header the way the provider does"""
    secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, obj: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_test_{next(_event_counter):06d}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def make_session_payload(
    session_id: str = "cs_test_a1",
    metadata: dict[str, str] | None = None,
    email: str | None = "buyer@example.com",
    amount_total: int = 2500,
    **overrides: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": amount_total,
        "currency": "usd",
        "payment_status": "paid",
        "payment_intent": f"pi_{session_id}",
        "customer_details": {"email": email, "name": "Test Buyer"} if email else None,
        "metadata": metadata if metadata is not None else {"quantity": "1"},
        "consent": {"promotions": "opt_in", "terms_of_service": "accepted"},
        "consent_collection": {"promotions": "auto", "terms_of_service": "required"},
    }
    payload.update(overrides)
    return payload


def make_checkout_event(**kwargs: Any) -> CheckoutSessionCompleted:
    """Parsed checkout.session.completed event for service level tests"""
    payload = make_session_payload(**kwargs)
    raw = make_event("checkout.session.completed", payload)
    envelope = EventEnvelope.model_validate(raw)
    session_data = {k: v for k, v in payload.items() if v is not None}
    return CheckoutSessionCompleted(envelope=envelope, session=CheckoutSession.model_validate(session_data))


@pytest.fixture
def post_webhook(test_client):
    """POST a signed event (or raw string) to the webhook endpoint"""
    async def _post(event: dict[str, Any] | str, signature: str | None = "sign", headers: dict | None = None):
        payload = event if isinstance(event, str) else json.dumps(event)
        request_headers = {"content-type": "application/json", **(headers or {})}
        if signature == "sign":
            request_headers["stripe-signature"] = sign_payload(payload)
        elif signature is not None:
            request_headers["stripe-signature"] = signature
        return await test_client.post(WEBHOOK_URL, content=payload, headers=request_headers)

    return _post


# Each test gets a fresh in-memory database through async_engine (function-scoped),
# so no ledger cleanup fixture is needed.
