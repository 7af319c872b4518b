import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from app.core.config import settings
from app.db.mongo import ensure_indexes, mongodb
from app.services.email_service import email_service
from app.utils.dates import utcnow
from main import app, init_state

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "TEST_MODE", True)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "ATOMIC_USAGE_RESERVATION", True)
    monkeypatch.setattr(settings, "LIFECYCLE_EMAILS_ENABLED", True)
    monkeypatch.setattr(settings, "WELCOME_EMAIL_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "LIFECYCLE_EMAIL_SEND_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "SMTP_HOST", None)


@pytest_asyncio.fixture
async def db(monkeypatch):
    database = AsyncMongoMockClient()["launchzone_test"]
    monkeypatch.setattr(mongodb, "db", database)
    await ensure_indexes(database)
    yield database


@pytest.fixture
def sent_emails(monkeypatch):
    """Replace the SMTP transport; every rendered email lands on this mock."""
    sender = AsyncMock(return_value=True)
    monkeypatch.setattr(email_service, "send_email", sender)
    return sender


@pytest_asyncio.fixture
async def app_state(db, sent_emails):
    init_state(app)
    app.state.task_queue.start()
    yield app.state
    await app.state.task_queue.stop()


@pytest_asyncio.fixture
async def client(app_state):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_subscription(db):
    """Insert a subscription whose billing period contains now."""

    async def _make(user_id="user_1", plan_code="STARTER", status="active", **overrides):
        now = utcnow()
        doc = {
            "user_id": user_id,
            "plan_code": plan_code,
            "status": status,
            "stripe_subscription_id": f"sub_{user_id}",
            "stripe_customer_id": f"cus_{user_id}",
            "current_period_start": now - timedelta(days=1),
            "current_period_end": now + timedelta(days=29),
            "trial_start": None,
            "trial_end": None,
            "welcome_email_sent": None,
            "trial_reminder_sent": None,
            "final_reminder_sent": None,
            "conversion_email_sent": None,
            "last_event_at": None,
            "status_event_at": None,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(overrides)
        result = await db.subscriptions.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    return _make


@pytest.fixture
def make_profile(db):
    async def _make(user_id="user_1", email="ada@example.com", first_name="Ada", **overrides):
        doc = {"user_id": user_id, "email": email, "first_name": first_name, "subscription_tier": "free"}
        doc.update(overrides)
        await db.user_profiles.insert_one(doc)
        return doc

    return _make


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def post_webhook(client):
    """POST a Stripe event to the webhook endpoint with a valid signature."""

    async def _post(event: dict, signature: str = None):
        payload = json.dumps(event)
        return await client.post(
            "/api/v1/billing/webhooks/stripe",
            content=payload,
            headers={
                "stripe-signature": signature or sign_payload(payload),
                "content-type": "application/json",
            },
        )

    return _post


@pytest.fixture
def sign():
    return sign_payload
