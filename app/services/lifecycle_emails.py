"""
Hourly trial-lifecycle email job.

Four independent passes (welcome, 3-day reminder, 1-day final reminder,
conversion) each select subscriptions inside a time window whose one-shot
flag is still null. A row's flag is claimed with a conditional update before
the email goes out and handed back if the send fails, so concurrent runs and
replays send each email at most once per subscription.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from bson import ObjectId

from app.core.config import settings
from app.db.mongo import get_database
from app.services.email_service import EmailService, email_service
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

WELCOME_LOOKBACK = timedelta(hours=2)
REMINDER_LEAD = timedelta(days=3)
REMINDER_WINDOW = timedelta(hours=24)
FINAL_REMINDER_LEAD = timedelta(days=1)
FINAL_REMINDER_WINDOW = timedelta(hours=12)
CONVERSION_LOOKBACK = timedelta(hours=2)

Candidate = Tuple[Dict[str, Any], Dict[str, Any]]


def seconds_until_next_hour(now: datetime) -> float:
    next_run = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return max((next_run - now).total_seconds(), 1.0)


def days_until(moment: datetime, now: datetime) -> int:
    return max(math.ceil((moment - now).total_seconds() / 86400), 1)


class LifecycleEmailJob:
    def __init__(
        self,
        sender: Optional[EmailService] = None,
        send_delay: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sender = sender or email_service
        self.send_delay = settings.LIFECYCLE_EMAIL_SEND_DELAY_SECONDS if send_delay is None else send_delay
        self.clock = clock
        self.is_running = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._schedule_loop())
            logger.info("Lifecycle email job scheduled to run hourly")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _schedule_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_next_hour(self.clock()))
            await self.process_lifecycle_emails()

    async def process_lifecycle_emails(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        """Run all passes once. Returns per-pass send counts, or None if a run is in flight."""
        if self.is_running:
            logger.info("Lifecycle email job already running, skipping...")
            return None

        self.is_running = True
        now = now or self.clock()
        logger.info("Processing lifecycle emails...")
        try:
            welcome, reminder, final, conversion = await asyncio.gather(
                self.send_welcome_emails(now),
                self.send_trial_reminders(now),
                self.send_final_reminders(now),
                self.send_conversion_emails(now),
            )
            return {"welcome": welcome, "reminder": reminder, "final": final, "conversion": conversion}
        finally:
            self.is_running = False

    async def send_welcome_emails(self, now: datetime) -> int:
        query = {
            "status": "trialing",
            "trial_start": {"$gte": now - WELCOME_LOOKBACK},
            "welcome_email_sent": None,
        }
        return await self._run_pass("welcome", query, "welcome_email_sent", self.sender.send_trial_welcome_email, now)

    async def send_trial_reminders(self, now: datetime) -> int:
        center = now + REMINDER_LEAD
        query = {
            "status": "trialing",
            "trial_end": {"$gte": center - REMINDER_WINDOW / 2, "$lt": center + REMINDER_WINDOW / 2},
            "trial_reminder_sent": None,
        }

        async def send(user, subscription):
            return await self.sender.send_trial_reminder_email(
                user, subscription, days_until(subscription["trial_end"], now)
            )

        return await self._run_pass("trial reminder", query, "trial_reminder_sent", send, now)

    async def send_final_reminders(self, now: datetime) -> int:
        center = now + FINAL_REMINDER_LEAD
        query = {
            "status": "trialing",
            "trial_end": {"$gte": center - FINAL_REMINDER_WINDOW / 2, "$lt": center + FINAL_REMINDER_WINDOW / 2},
            "final_reminder_sent": None,
        }
        return await self._run_pass(
            "final reminder", query, "final_reminder_sent", self.sender.send_trial_final_reminder_email, now
        )

    async def send_conversion_emails(self, now: datetime) -> int:
        query = {
            "status": "active",
            "trial_end": {"$ne": None},
            "updated_at": {"$gte": now - CONVERSION_LOOKBACK},
            "conversion_email_sent": None,
        }
        return await self._run_pass(
            "conversion", query, "conversion_email_sent", self.sender.send_trial_conversion_email, now
        )

    async def _candidates(self, query: Dict[str, Any]) -> List[Candidate]:
        """Subscriptions matching ``query`` paired with their user profile."""
        db = await get_database()
        matches = []
        async for subscription in db.subscriptions.find(query):
            profile = await db.user_profiles.find_one({"user_id": subscription["user_id"]})
            if not profile or not profile.get("email"):
                logger.warning(f"No profile with email for subscription {subscription['_id']}, skipping")
                continue
            matches.append((subscription, profile))
        return matches

    async def _claim(self, subscription_id, flag: str, now: datetime) -> bool:
        db = await get_database()
        result = await db.subscriptions.update_one(
            {"_id": subscription_id, flag: None},
            {"$set": {flag: now}},
        )
        return result.modified_count == 1

    async def _unclaim(self, subscription_id, flag: str) -> None:
        db = await get_database()
        await db.subscriptions.update_one({"_id": subscription_id}, {"$set": {flag: None}})

    async def _send_once(
        self,
        subscription: Dict[str, Any],
        user: Dict[str, Any],
        flag: str,
        send: Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[bool]],
        now: datetime,
    ) -> bool:
        """Claim ``flag``, send, and give the claim back if the send fails."""
        if not await self._claim(subscription["_id"], flag, now):
            return False
        try:
            sent = await send(user, subscription)
        except Exception:
            await self._unclaim(subscription["_id"], flag)
            raise
        if not sent:
            await self._unclaim(subscription["_id"], flag)
        return bool(sent)

    async def _run_pass(
        self,
        label: str,
        query: Dict[str, Any],
        flag: str,
        send: Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[bool]],
        now: datetime,
    ) -> int:
        sent_count = 0
        try:
            candidates = await self._candidates(query)
            logger.info(f"Found {len(candidates)} users for {label} emails")
            for subscription, user in candidates:
                try:
                    if await self._send_once(subscription, user, flag, send, now):
                        sent_count += 1
                        logger.info(f"{label.capitalize()} email sent to {user['email']}")
                    else:
                        logger.warning(f"{label.capitalize()} email to {user['email']} not sent")
                    if self.send_delay:
                        await asyncio.sleep(self.send_delay)
                except Exception as e:
                    logger.error(f"Failed to send {label} email to {user.get('email')}: {e}")
        except Exception as e:
            logger.error(f"Error sending {label} emails: {e}")
        return sent_count

    async def trigger_welcome_email(self, user_id: str, subscription_id: str) -> bool:
        """Send the welcome email right away unless it already went out."""
        try:
            db = await get_database()
            key = ObjectId(subscription_id) if ObjectId.is_valid(subscription_id) else subscription_id
            subscription = await db.subscriptions.find_one({"_id": key, "user_id": user_id})
            if not subscription:
                logger.error(f"Subscription {subscription_id} not found for welcome email")
                return False
            user = await db.user_profiles.find_one({"user_id": user_id})
            if not user or not user.get("email"):
                logger.error(f"No profile with email for user {user_id}")
                return False

            sent = await self._send_once(
                subscription, user, "welcome_email_sent", self.sender.send_trial_welcome_email, self.clock()
            )
            if sent:
                logger.info(f"Welcome email triggered for {user['email']}")
            return sent
        except Exception as e:
            logger.error(f"Error triggering welcome email: {e}")
            return False

    async def test_lifecycle_email(self, email_type: str, email: str) -> bool:
        """Send one lifecycle template to a user by email, ignoring the one-shot flags."""
        try:
            db = await get_database()
            user = await db.user_profiles.find_one({"email": email})
            if not user:
                raise LookupError(f"No user profile for {email}")
            subscription = await db.subscriptions.find_one(
                {"user_id": user["user_id"]}, sort=[("updated_at", -1)]
            )
            if not subscription:
                raise LookupError(f"No subscription for {email}")

            senders = {
                "welcome": lambda: self.sender.send_trial_welcome_email(user, subscription),
                "reminder": lambda: self.sender.send_trial_reminder_email(user, subscription, 3),
                "final": lambda: self.sender.send_trial_final_reminder_email(user, subscription),
                "conversion": lambda: self.sender.send_trial_conversion_email(user, subscription),
            }
            if email_type not in senders:
                raise ValueError(f"Invalid email type: {email_type}")

            sent = await senders[email_type]()
            logger.info(f"Test {email_type} email sent to {email}: {sent}")
            return bool(sent)
        except Exception as e:
            logger.error(f"Error sending test {email_type} email: {e}")
            return False
