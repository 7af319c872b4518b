import json
import time
from types import SimpleNamespace

import pytest
import stripe

from app.core.config import settings
from app.services.usage_ledger import usage_ledger

DAY = 86400


@pytest.fixture(autouse=True)
def stripe_customer(monkeypatch):
    """Every Stripe customer in these tests belongs to user_1."""

    def retrieve(customer_id, **kwargs):
        return SimpleNamespace(metadata={"userId": "user_1"})

    monkeypatch.setattr(stripe.Customer, "retrieve", retrieve)


def subscription_object(status="trialing", plan_code="STARTER", price_id=None, **fields):
    now = int(time.time())
    obj = {
        "id": "sub_stripe_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "metadata": {"planCode": plan_code} if plan_code else {},
        "items": {"data": [{"price": {"id": price_id}}]} if price_id else {"data": []},
        "current_period_start": now - DAY,
        "current_period_end": now + 29 * DAY,
        "trial_start": now if status == "trialing" else None,
        "trial_end": now + 7 * DAY if status == "trialing" else None,
    }
    obj.update(fields)
    return obj


def event(event_type, data_object, created=None, event_id="evt_1"):
    return {
        "id": event_id,
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": data_object},
    }


def checkout_session(addon_type="VIDEO_60", payment_intent="pi_1", mode="payment", **fields):
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": mode,
        "payment_intent": payment_intent,
        "amount_total": 800,
        "metadata": {"userId": "user_1", "addonType": addon_type},
    }
    session.update(fields)
    return session


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(post_webhook, db, sign):
    payload = event("customer.subscription.updated", subscription_object())
    forged = sign(json.dumps(payload), secret="whsec_wrong")

    response = await post_webhook(payload, signature=forged)

    assert response.status_code == 400
    assert response.text.startswith("Webhook Error")
    assert await db.subscriptions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client, db):
    response = await client.post(
        "/api/v1/billing/webhooks/stripe",
        content=json.dumps(event("customer.subscription.updated", subscription_object())),
    )

    assert response.status_code == 400
    assert await db.subscriptions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged(post_webhook):
    response = await post_webhook(event("customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert response.json() == {"received": True}


@pytest.mark.asyncio
async def test_duplicate_trial_event_creates_one_row_and_one_welcome(
    post_webhook, app_state, db, make_profile, sent_emails
):
    await make_profile()
    payload = event("customer.subscription.updated", subscription_object(status="trialing"), created=1_000)

    first = await post_webhook(payload)
    second = await post_webhook(payload)
    await app_state.task_queue.join()

    assert first.status_code == 200
    assert second.status_code == 200
    assert await db.subscriptions.count_documents({"stripe_subscription_id": "sub_stripe_1"}) == 1

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["user_id"] == "user_1"
    assert row["plan_code"] == "STARTER"
    assert row["status"] == "trialing"
    assert row["welcome_email_sent"] is not None

    assert sent_emails.await_count == 1
    assert sent_emails.await_args.kwargs["to"] == "ada@example.com"
    assert sent_emails.await_args.kwargs["subject"].startswith("Welcome to LaunchZone")

    profile = await db.user_profiles.find_one({"user_id": "user_1"})
    assert profile["subscription_tier"] == "starter"
    assert profile["subscription_status"] == "trialing"
    assert profile["stripe_subscription_id"] == "sub_stripe_1"


@pytest.mark.asyncio
async def test_subscription_materializes_usage_bucket(post_webhook, db):
    await post_webhook(event("customer.subscription.created", subscription_object(status="active", plan_code="PRO_50")))

    bucket = await db.usage_buckets.find_one({"user_id": "user_1"})
    assert bucket["plan_code"] == "PRO_50"
    assert bucket["posts_used"] == 0


@pytest.mark.asyncio
async def test_plan_resolved_from_price_id(post_webhook, db):
    obj = subscription_object(status="active", plan_code=None, price_id=settings.STRIPE_PRICE_PRO_200)

    response = await post_webhook(event("customer.subscription.created", obj))

    assert response.status_code == 200
    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["plan_code"] == "PRO_200"


@pytest.mark.asyncio
async def test_period_read_from_subscription_item(post_webhook, db):
    now = int(time.time())
    obj = subscription_object(status="active", current_period_start=None, current_period_end=None)
    obj["items"] = {"data": [{"current_period_start": now - DAY, "current_period_end": now + 29 * DAY}]}

    await post_webhook(event("customer.subscription.updated", obj))

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["current_period_start"] is not None
    assert row["current_period_end"] > row["current_period_start"]


@pytest.mark.asyncio
async def test_unknown_price_is_acknowledged_without_row(post_webhook, db):
    obj = subscription_object(status="active", plan_code=None, price_id="price_unknown")

    response = await post_webhook(event("customer.subscription.created", obj))

    assert response.status_code == 200
    assert await db.subscriptions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_missing_user_is_acknowledged_without_row(post_webhook, db, monkeypatch):
    def retrieve(customer_id, **kwargs):
        return SimpleNamespace(metadata={})

    monkeypatch.setattr(stripe.Customer, "retrieve", retrieve)

    response = await post_webhook(event("customer.subscription.updated", subscription_object(status="active")))

    assert response.status_code == 200
    assert await db.subscriptions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_user_falls_back_to_subscription_metadata(post_webhook, db, monkeypatch):
    def retrieve(customer_id, **kwargs):
        raise stripe.InvalidRequestError("No such customer", "id")

    monkeypatch.setattr(stripe.Customer, "retrieve", retrieve)
    obj = subscription_object(status="active")
    obj["metadata"]["userId"] = "user_2"

    await post_webhook(event("customer.subscription.updated", obj))

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["user_id"] == "user_2"


@pytest.mark.asyncio
async def test_stale_event_does_not_regress_state(post_webhook, db):
    await post_webhook(event("customer.subscription.updated", subscription_object(status="active"), created=2_000))
    await post_webhook(
        event("customer.subscription.updated", subscription_object(status="past_due"), created=1_000, event_id="evt_0")
    )

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "active"
    assert row["last_event_at"] == 2_000


@pytest.mark.asyncio
async def test_deleted_subscription_is_canceled_and_kept(post_webhook, db, make_profile):
    await make_profile()
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=1_000))

    response = await post_webhook(
        event("customer.subscription.deleted", subscription_object(status="canceled"), created=2_000, event_id="evt_2")
    )

    assert response.status_code == 200
    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row is not None
    assert row["status"] == "canceled"
    profile = await db.user_profiles.find_one({"user_id": "user_1"})
    assert profile["subscription_tier"] == "free"
    assert await usage_ledger.get_live_subscription("user_1") is None


@pytest.mark.asyncio
async def test_invoice_events_move_status(post_webhook, db):
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=1_000))

    await post_webhook(event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_stripe_1"}, created=2_000))
    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "past_due"

    invoice = {"id": "in_2", "parent": {"subscription_details": {"subscription": "sub_stripe_1"}}}
    await post_webhook(event("invoice.paid", invoice, created=3_000, event_id="evt_3"))
    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "active"
    assert row["status_event_at"] == 3_000
    assert row["last_event_at"] == 1_000


@pytest.mark.asyncio
async def test_late_invoice_failure_is_ignored(post_webhook, db):
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=5_000))

    await post_webhook(event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_stripe_1"}, created=4_000))

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "active"


@pytest.mark.asyncio
async def test_plan_change_applies_after_newer_invoice(post_webhook, db, make_profile):
    await make_profile()
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=50))
    await post_webhook(
        event("invoice.paid", {"id": "in_1", "subscription": "sub_stripe_1"}, created=101, event_id="evt_2")
    )

    response = await post_webhook(
        event(
            "customer.subscription.updated",
            subscription_object(status="past_due", plan_code="PRO_50"),
            created=100,
            event_id="evt_3",
        )
    )

    assert response.status_code == 200
    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["plan_code"] == "PRO_50"
    assert row["status"] == "active"
    assert row["last_event_at"] == 100
    assert row["status_event_at"] == 101
    profile = await db.user_profiles.find_one({"user_id": "user_1"})
    assert profile["subscription_tier"] == "pro"
    assert profile["subscription_status"] == "active"
    bucket = await usage_ledger.get_current_usage_bucket("user_1")
    assert bucket.posts_limit == 1000


@pytest.mark.asyncio
async def test_invoices_do_not_revive_canceled_subscription(post_webhook, db, make_profile):
    await make_profile()
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=1_000))
    await post_webhook(
        event("customer.subscription.deleted", subscription_object(status="canceled"), created=2_000, event_id="evt_2")
    )

    await post_webhook(event("invoice.paid", {"id": "in_1", "subscription": "sub_stripe_1"}, created=3_000, event_id="evt_3"))
    await post_webhook(
        event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_stripe_1"}, created=3_500, event_id="evt_4")
    )

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "canceled"
    assert await usage_ledger.get_live_subscription("user_1") is None
    profile = await db.user_profiles.find_one({"user_id": "user_1"})
    assert profile["subscription_tier"] == "free"
    assert profile["subscription_status"] == "canceled"


@pytest.mark.asyncio
async def test_deletion_applies_behind_newer_invoice(post_webhook, db):
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=1_000))
    await post_webhook(event("invoice.paid", {"id": "in_1", "subscription": "sub_stripe_1"}, created=3_000, event_id="evt_2"))

    await post_webhook(
        event("customer.subscription.deleted", subscription_object(status="canceled"), created=2_000, event_id="evt_3")
    )

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["status"] == "canceled"
    assert row["status_event_at"] == 3_000


@pytest.mark.asyncio
async def test_event_without_timestamp_keeps_fences(post_webhook, app_state, db):
    await post_webhook(event("customer.subscription.created", subscription_object(status="active"), created=2_000))

    await app_state.reconciler.handle_subscription_change(subscription_object(status="active", plan_code="PRO_50"), None)

    row = await db.subscriptions.find_one({"stripe_subscription_id": "sub_stripe_1"})
    assert row["plan_code"] == "PRO_50"
    assert row["last_event_at"] == 2_000
    assert row["status_event_at"] == 2_000


@pytest.mark.asyncio
async def test_addon_purchase_is_additive_and_idempotent(post_webhook, db, make_subscription):
    await make_subscription(plan_code="PRO_50")
    await usage_ledger.get_current_usage_bucket("user_1")

    await post_webhook(event("checkout.session.completed", checkout_session(payment_intent="pi_1")))
    bucket = await db.usage_buckets.find_one({"user_id": "user_1"})
    assert bucket["video_minutes_limit"] == 120

    await post_webhook(event("checkout.session.completed", checkout_session(payment_intent="pi_2"), event_id="evt_2"))
    bucket = await db.usage_buckets.find_one({"user_id": "user_1"})
    assert bucket["video_minutes_limit"] == 180

    replay = await post_webhook(event("checkout.session.completed", checkout_session(payment_intent="pi_2"), event_id="evt_2"))
    assert replay.status_code == 200
    bucket = await db.usage_buckets.find_one({"user_id": "user_1"})
    assert bucket["video_minutes_limit"] == 180
    assert bucket["addon_boosts"] == {"video_minutes_limit": 120}

    assert await db.addon_purchases.count_documents({"user_id": "user_1"}) == 2
    assert await db.analytics_events.count_documents({"event_name": "addon_purchased"}) == 2


@pytest.mark.asyncio
async def test_recurring_addon_checkout_is_fulfilled(post_webhook, db, make_subscription):
    await make_subscription(plan_code="STARTER")
    session = checkout_session(
        addon_type="BRAND", mode="subscription", payment_intent=None, subscription="sub_addon_1", amount_total=500
    )

    await post_webhook(event("checkout.session.completed", session))

    bucket = await db.usage_buckets.find_one({"user_id": "user_1"})
    assert bucket["brands_limit"] == 2
    purchase = await db.addon_purchases.find_one({"user_id": "user_1"})
    assert purchase["stripe_payment_id"] == "sub_addon_1"

    addon_subscription = subscription_object(
        status="active", plan_code=None, price_id=settings.STRIPE_ADDON_PRICE_BRAND, id="sub_addon_1"
    )
    response = await post_webhook(event("customer.subscription.created", addon_subscription, event_id="evt_2"))
    assert response.status_code == 200
    assert await db.subscriptions.count_documents({"stripe_subscription_id": "sub_addon_1"}) == 0


@pytest.mark.asyncio
async def test_plan_checkout_is_left_to_subscription_events(post_webhook, db, make_subscription):
    await make_subscription(plan_code="STARTER")
    session = checkout_session(mode="subscription", subscription="sub_stripe_1", metadata={"userId": "user_1"})

    response = await post_webhook(event("checkout.session.completed", session))

    assert response.status_code == 200
    assert await db.addon_purchases.count_documents({}) == 0


@pytest.mark.asyncio
async def test_addon_without_bucket_is_not_recorded(post_webhook, db):
    response = await post_webhook(event("checkout.session.completed", checkout_session()))

    assert response.status_code == 200
    assert await db.addon_purchases.count_documents({}) == 0


@pytest.mark.asyncio
async def test_handler_failure_answers_500_for_retry(post_webhook, db, make_subscription, monkeypatch):
    await make_subscription(plan_code="PRO_50")

    async def store_down(user_id, limit_field, amount):
        raise RuntimeError("write concern timeout")

    monkeypatch.setattr(usage_ledger, "raise_limit", store_down)

    response = await post_webhook(event("checkout.session.completed", checkout_session()))

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}
    # the purchase row is rolled back so the redelivery can fulfil it
    assert await db.addon_purchases.count_documents({}) == 0


@pytest.mark.asyncio
async def test_trial_will_end_notifies_and_tracks(post_webhook, db, make_profile, sent_emails):
    await make_profile()

    response = await post_webhook(event("customer.subscription.trial_will_end", subscription_object(status="trialing")))

    assert response.status_code == 200
    assert sent_emails.await_count == 1
    assert sent_emails.await_args.kwargs["subject"] == "Your LaunchZone trial is ending soon"
    tracked = await db.analytics_events.find_one({"event_name": "trial_ending_notification"})
    assert tracked["user_id"] == "user_1"
    assert tracked["event_properties"]["email_sent"] is True


@pytest.mark.asyncio
async def test_missing_webhook_secret_outside_test_mode(client, monkeypatch):
    monkeypatch.setattr(settings, "TEST_MODE", False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)

    response = await client.post("/api/v1/billing/webhooks/stripe", content="{}")

    assert response.status_code == 503
