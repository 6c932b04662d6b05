import json
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "oracle_credits_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("IDEMPOTENCY_POLL_SECONDS", "0.01")

from oracle_credits.core.exceptions import InvalidWebhookError  # noqa: E402
from oracle_credits.models.credit_transaction import Provider  # noqa: E402
from oracle_credits.services import providers  # noqa: E402
from oracle_credits.services.providers.base import (  # noqa: E402
    CaptureResult,
    CheckoutSession,
    PaymentProvider,
    PaymentVerification,
    WebhookEvent,
)


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-process database per test."""
    from oracle_credits.db.init import DOCUMENT_MODELS
    mongo = AsyncMongoMockClient()
    await init_beanie(database=mongo.get_database("oracle_credits_test"), document_models=DOCUMENT_MODELS)
    yield mongo


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from oracle_credits.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


class FakeProvider(PaymentProvider):
    """In-memory provider. Webhooks carry a JSON WebhookEvent body and a fake signature header."""

    def __init__(self, name: Provider, configured: bool = True):
        self.name = name
        self.configured = configured
        self.sessions = 0
        self.paid = True
        self.capture_result = CaptureResult(success=True, capture_id="CAPTURE-1")
        self.captures = 0

    def is_configured(self) -> bool:
        return self.configured

    async def create_checkout_session(self, user_id, user_email, package, success_url, cancel_url):
        self.sessions += 1
        session_id = f"{self.name.value}_sess_{self.sessions}"
        return CheckoutSession(session_id=session_id, redirect_url=f"https://pay.example/{session_id}")

    async def capture_payment(self, order_id):
        self.captures += 1
        return self.capture_result

    async def verify_payment(self, payment_id):
        return PaymentVerification(success=self.paid, status="paid" if self.paid else "unpaid")

    async def verify_webhook(self, payload, headers):
        if headers.get("x-fake-signature") != "valid":
            raise InvalidWebhookError("Invalid signature")
        data = json.loads(payload)
        if data.get("type") == "unhandled":
            return None
        return WebhookEvent(provider=self.name, **data)


@pytest.fixture
def fake_providers(monkeypatch):
    fakes = {
        Provider.STRIPE: FakeProvider(Provider.STRIPE),
        Provider.PAYPAL: FakeProvider(Provider.PAYPAL),
    }
    for name, fake in fakes.items():
        monkeypatch.setitem(providers._providers, name, fake)
    return fakes


@pytest_asyncio.fixture
async def user():
    from oracle_credits.services import users
    return await users.create_user("seeker@example.com", "Seeker")


@pytest_asyncio.fixture
async def funded_user(user):
    from oracle_credits.models.credit_transaction import TransactionKind
    from oracle_credits.services import ledger
    await ledger.add(user.id, 10, TransactionKind.ADMIN_ADJUSTMENT, "seed")
    return user


@pytest.fixture
def login():
    """Attach a signed session cookie for user to client."""

    def _login(client: AsyncClient, user) -> None:
        from oracle_credits.core.security import create_session_cookie
        from oracle_credits.deps import SESSION_COOKIE_NAME
        from oracle_credits.services.users import session_payload_for_user
        client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie(session_payload_for_user(user)))

    return _login
