"""
Folds Stripe webhook events into subscription, profile and usage state.

Handlers are safe to re-run: subscriptions are upserted by
``stripe_subscription_id``, add-on fulfillment is keyed on the payment id and
the welcome email is guarded by its one-shot flag.

Two fences keep late deliveries from regressing newer state. Plan, period
and trial fields are fenced by ``last_event_at`` and only written by
subscription events. ``status`` is fenced by ``status_event_at`` and is also
moved by invoice events, so an invoice arriving first never blocks the plan
change carried by a slightly older subscription event. ``canceled`` is
terminal: invoice events never move a row out of it.

Missing metadata or an unknown plan is logged and the event acknowledged;
store failures propagate so the endpoint answers 500 and Stripe retries.
"""

import logging
from typing import Any, Dict, Optional

import stripe
from pymongo.errors import DuplicateKeyError

from app.core.config import settings
from app.core.plans import ADDON_CONFIGS, PLAN_CONFIGS, map_plan_code_to_tier, plan_for_price_id
from app.db.mongo import get_database
from app.schemas.subscription import AddonPurchase
from app.services.email_service import email_service
from app.services.usage_ledger import usage_ledger
from app.services.task_queue import BackgroundTaskQueue
from app.utils.dates import from_timestamp, utcnow

logger = logging.getLogger(__name__)

# conditional writes retried when a concurrent delivery moves the row under us
MAX_WRITE_ATTEMPTS = 3


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def resolve_plan_code(subscription: Dict[str, Any]) -> Optional[str]:
    """Plan from subscription metadata, else reverse-mapped from the first price id."""
    plan_code = (subscription.get("metadata") or {}).get("planCode")
    if plan_code in PLAN_CONFIGS:
        return plan_code
    price = _first_item(subscription).get("price") or {}
    return plan_for_price_id(price.get("id"))


def _period_field(subscription: Dict[str, Any], name: str):
    # newer API versions moved the billing period onto the subscription item
    value = subscription.get(name)
    if value is None:
        value = _first_item(subscription).get(name)
    return from_timestamp(value)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _fence(field: str, created: Optional[int]) -> Dict[str, Any]:
    """Filter matching rows whose ``field`` event time is not newer than ``created``."""
    if created is None:
        return {}
    return {"$or": [{field: None}, {field: {"$lte": created}}]}


def _is_current(created: Optional[int], applied: Optional[int]) -> bool:
    return created is None or applied is None or created >= applied


class SubscriptionReconciler:
    def __init__(self, task_queue: BackgroundTaskQueue, lifecycle_job=None):
        self.task_queue = task_queue
        self.lifecycle_job = lifecycle_job
        self.handlers = {
            "customer.subscription.created": self.handle_subscription_change,
            "customer.subscription.updated": self.handle_subscription_change,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "checkout.session.completed": self.handle_checkout_completed,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_payment_failed,
            "customer.subscription.trial_will_end": self.handle_trial_will_end,
        }

    async def handle_event(self, event: Dict[str, Any]) -> bool:
        """Dispatch one verified event. Returns False for event types we ignore."""
        event_type = event.get("type")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return False

        logger.info(f"Processing webhook: {event_type} ({event.get('id')})")
        data_object = (event.get("data") or {}).get("object") or {}
        await handler(data_object, event.get("created"))
        return True

    def resolve_user_id(self, subscription: Dict[str, Any]) -> Optional[str]:
        """User id from the Stripe customer's metadata, else the subscription's."""
        customer_id = subscription.get("customer")
        if customer_id:
            try:
                customer = stripe.Customer.retrieve(customer_id)
                user_id = customer.metadata["userId"]
                if user_id:
                    return user_id
            except (KeyError, AttributeError, TypeError):
                logger.warning(f"No userId in metadata of customer {customer_id}")
            except stripe.StripeError as e:
                logger.error(f"Error retrieving customer {customer_id}: {e}")

        metadata = subscription.get("metadata") or {}
        return metadata.get("userId") or metadata.get("user_id")

    async def handle_subscription_change(self, subscription: Dict[str, Any], created: Optional[int] = None):
        stripe_subscription_id = subscription.get("id")
        if not stripe_subscription_id:
            logger.error("Subscription event without an id")
            return

        user_id = self.resolve_user_id(subscription)
        if not user_id:
            logger.error(f"No userId found for subscription {stripe_subscription_id}")
            return

        plan_code = resolve_plan_code(subscription)
        if not plan_code:
            logger.error(f"Could not determine plan code from subscription {stripe_subscription_id}")
            return

        fields = {
            "user_id": user_id,
            "plan_code": plan_code,
            "stripe_customer_id": subscription.get("customer"),
            "current_period_start": _period_field(subscription, "current_period_start"),
            "current_period_end": _period_field(subscription, "current_period_end"),
            "trial_start": from_timestamp(subscription.get("trial_start")),
            "trial_end": from_timestamp(subscription.get("trial_end")),
        }

        row = await self._upsert_subscription(stripe_subscription_id, fields, subscription.get("status"), created)
        if row is None:
            return

        user_id = row["user_id"]
        status = row["status"]
        await self._mirror_profile(user_id, {
            "subscription_tier": "free" if status == "canceled" else map_plan_code_to_tier(row["plan_code"]),
            "subscription_status": status,
            "stripe_customer_id": row.get("stripe_customer_id"),
            "stripe_subscription_id": stripe_subscription_id,
        })

        bucket = await usage_ledger.get_current_usage_bucket(user_id)
        if bucket is None:
            logger.info(f"No live usage bucket for user {user_id} (status {status})")

        if status == "trialing" and row.get("trial_end") and row.get("welcome_email_sent") is None:
            self._schedule_welcome(user_id, str(row["_id"]))

        logger.info(f"Subscription {stripe_subscription_id} processed successfully")

    async def _upsert_subscription(
        self, stripe_subscription_id: str, fields: Dict[str, Any], status: Optional[str], created: Optional[int]
    ) -> Optional[Dict[str, Any]]:
        """
        Insert or update the row for ``stripe_subscription_id``.

        ``fields`` and ``status`` are fenced separately, so an event still
        applies its plan change when a newer invoice already moved the status.
        Returns None when both parts are stale.
        """
        db = await get_database()
        for _ in range(MAX_WRITE_ATTEMPTS):
            now = utcnow()
            existing = await db.subscriptions.find_one({"stripe_subscription_id": stripe_subscription_id})

            if existing is None:
                doc = {
                    **fields,
                    "status": status,
                    "last_event_at": created,
                    "status_event_at": created,
                    "stripe_subscription_id": stripe_subscription_id,
                    "welcome_email_sent": None,
                    "trial_reminder_sent": None,
                    "final_reminder_sent": None,
                    "conversion_email_sent": None,
                    "created_at": now,
                    "updated_at": now,
                }
                try:
                    result = await db.subscriptions.insert_one(doc)
                except DuplicateKeyError:
                    continue
                doc["_id"] = result.inserted_id
                logger.info(f"Created subscription {stripe_subscription_id} for user {fields['user_id']}")
                return doc

            last_event_at = existing.get("last_event_at")
            status_event_at = existing.get("status_event_at")
            current_status = existing.get("status")
            apply_fields = _is_current(created, last_event_at)
            apply_status = _is_current(created, status_event_at) and (
                current_status != "canceled" or status == "canceled"
            )
            if not apply_fields and not apply_status:
                logger.warning(
                    f"Skipping stale event for subscription {stripe_subscription_id} "
                    f"({created} < {last_event_at})"
                )
                return None

            update: Dict[str, Any] = {"updated_at": now}
            if apply_fields:
                update.update(fields)
                if created is not None:
                    update["last_event_at"] = created
            if apply_status:
                update["status"] = status
                if created is not None:
                    update["status_event_at"] = created
            else:
                logger.info(
                    f"Keeping status {current_status} of subscription {stripe_subscription_id}; "
                    f"{status} from event {created} is stale"
                )

            result = await db.subscriptions.update_one(
                {
                    "_id": existing["_id"],
                    "last_event_at": last_event_at,
                    "status_event_at": status_event_at,
                    "status": current_status,
                },
                {"$set": update},
            )
            if result.matched_count == 1:
                return {**existing, **update}

        logger.error(f"Gave up writing subscription {stripe_subscription_id} after concurrent updates")
        return None

    async def _set_status(self, stripe_subscription_id: str, status: str, created: Optional[int]) -> Optional[Dict[str, Any]]:
        """Status-only transition fenced by ``status_event_at``. Canceled rows stay canceled."""
        db = await get_database()
        update = {"status": status, "updated_at": utcnow()}
        if created is not None:
            update["status_event_at"] = created
        query = {"stripe_subscription_id": stripe_subscription_id, **_fence("status_event_at", created)}
        if status != "canceled":
            query["status"] = {"$ne": "canceled"}
        row = await db.subscriptions.find_one_and_update(query, {"$set": update})
        if row is None and status == "canceled":
            # deletion is final even behind a newer status event
            row = await db.subscriptions.find_one_and_update(
                {"stripe_subscription_id": stripe_subscription_id},
                {"$set": {"status": status, "updated_at": utcnow()}},
            )
        if row is None:
            logger.warning(f"Subscription {stripe_subscription_id} not found or event is stale; status {status} not applied")
        return row

    async def _mirror_profile(self, user_id: str, fields: Dict[str, Any]) -> None:
        db = await get_database()
        result = await db.user_profiles.update_one(
            {"user_id": user_id},
            {"$set": {**fields, "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            logger.warning(f"No user profile to update for user {user_id}")

    def _schedule_welcome(self, user_id: str, subscription_id: str) -> None:
        if not settings.LIFECYCLE_EMAILS_ENABLED or self.lifecycle_job is None:
            return
        self.task_queue.submit(
            self.lifecycle_job.trigger_welcome_email,
            user_id,
            subscription_id,
            name="welcome_email",
            delay=settings.WELCOME_EMAIL_DELAY_SECONDS,
        )

    async def handle_subscription_deleted(self, subscription: Dict[str, Any], created: Optional[int] = None):
        stripe_subscription_id = subscription.get("id")
        if not stripe_subscription_id:
            logger.error("Subscription deletion event without an id")
            return

        row = await self._set_status(stripe_subscription_id, "canceled", created)
        if row is None:
            return

        await self._mirror_profile(row["user_id"], {
            "subscription_tier": "free",
            "subscription_status": "canceled",
        })
        logger.info(f"Subscription {stripe_subscription_id} canceled successfully")

    async def handle_checkout_completed(self, session: Dict[str, Any], created: Optional[int] = None):
        metadata = session.get("metadata") or {}
        mode = session.get("mode")
        addon_type = metadata.get("addonType")

        if mode == "subscription" and not addon_type:
            logger.info(f"Subscription checkout completed: {session.get('subscription')}")
            return
        if mode not in ("payment", "subscription"):
            logger.info(f"Ignoring checkout session {session.get('id')} in mode {mode}")
            return

        user_id = metadata.get("userId")
        if not user_id or not addon_type:
            logger.error(f"Missing metadata in checkout session {session.get('id')}")
            return

        payment_id = session.get("payment_intent") or session.get("subscription") or session.get("id")
        await self.process_addon_purchase(user_id, addon_type, payment_id, session.get("amount_total"))

    async def process_addon_purchase(
        self,
        user_id: str,
        addon_type: str,
        payment_id: Optional[str],
        price_paid: Optional[int] = None,
    ) -> bool:
        """Record an add-on purchase once and additively raise the matching limit."""
        addon = ADDON_CONFIGS.get(addon_type)
        if not addon:
            logger.error(f"Unknown add-on type {addon_type} for user {user_id}")
            return False

        db = await get_database()
        purchase = AddonPurchase(
            user_id=user_id,
            type=addon_type,
            amount=addon["amount"],
            price_paid=price_paid,
            stripe_payment_id=payment_id,
            created_at=utcnow(),
        )
        try:
            result = await db.addon_purchases.insert_one(purchase.model_dump(exclude_none=True))
        except DuplicateKeyError:
            logger.info(f"Add-on purchase {payment_id} already fulfilled, skipping")
            return False

        try:
            bucket = await usage_ledger.raise_limit(user_id, addon["limit_field"], addon["amount"])
        except Exception:
            await db.addon_purchases.delete_one({"_id": result.inserted_id})
            raise

        if bucket is None:
            await db.addon_purchases.delete_one({"_id": result.inserted_id})
            logger.error(f"Add-on {addon_type} for user {user_id} not applied: no live usage bucket")
            return False

        await usage_ledger.track_event(user_id, "addon_purchased", {
            "addon_type": addon_type,
            "amount": addon["amount"],
            "price_paid": price_paid,
        })
        logger.info(f"Addon purchase processed: {addon_type} for user {user_id}")
        return True

    async def handle_invoice_paid(self, invoice: Dict[str, Any], created: Optional[int] = None):
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return
        row = await self._set_status(subscription_id, "active", created)
        if row is not None:
            await self._mirror_profile(row["user_id"], {"subscription_status": "active"})
            logger.info(f"Invoice paid for subscription: {subscription_id}")

    async def handle_payment_failed(self, invoice: Dict[str, Any], created: Optional[int] = None):
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return
        row = await self._set_status(subscription_id, "past_due", created)
        if row is not None:
            await self._mirror_profile(row["user_id"], {"subscription_status": "past_due"})
            logger.info(f"Payment failed for subscription: {subscription_id}")

    async def handle_trial_will_end(self, subscription: Dict[str, Any], created: Optional[int] = None):
        user_id = self.resolve_user_id(subscription)
        if not user_id:
            logger.error(f"No userId found for trial end of subscription {subscription.get('id')}")
            return

        db = await get_database()
        user = await db.user_profiles.find_one({"user_id": user_id})
        row = await db.subscriptions.find_one({"stripe_subscription_id": subscription.get("id")})
        snapshot = row or {
            "plan_code": resolve_plan_code(subscription),
            "trial_end": from_timestamp(subscription.get("trial_end")),
        }

        sent = False
        if user and user.get("email"):
            sent = await email_service.send_trial_ending_email(user, snapshot)
        else:
            logger.warning(f"No profile email for user {user_id}; trial ending email not sent")

        await usage_ledger.track_event(user_id, "trial_ending_notification", {
            "subscription_id": subscription.get("id"),
            "trial_end": subscription.get("trial_end"),
            "email_sent": sent,
        })
        logger.info(f"Trial ending notification processed for subscription: {subscription.get('id')}")
