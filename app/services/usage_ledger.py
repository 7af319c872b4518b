"""
Usage ledger: per-period usage buckets, limit evaluation and atomic counters.

Buckets are materialized on first reference in a billing period with a single
upsert on ``(user_id, period_start)``; counters only ever move through ``$inc``
so concurrent requests never lose updates. ``reserve`` folds the limit check
and the increment into one conditional update, which closes the window a
separate check followed by a later increment leaves open.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import UsageLedgerError
from app.core.plans import ADDON_CONFIGS, PLAN_CONFIGS, UNLIMITED, plan_limits
from app.db.mongo import get_database
from app.schemas.usage import ReservationResult, UsageBucket
from app.utils.dates import month_bounds, utcnow

logger = logging.getLogger(__name__)

# limit type -> (used field, limit field) for the counters stored on the bucket
COUNTER_FIELDS = {
    "posts": ("posts_used", "posts_limit"),
    "credits": ("credits_used", "credits_limit"),
    "video_minutes": ("video_minutes_used", "video_minutes_limit"),
}
LIMIT_TYPES = ("posts", "credits", "video_minutes", "brands")
LIVE_STATUSES = ("trialing", "active", "past_due")
LIMIT_FIELDS = ("posts_limit", "credits_limit", "video_minutes_limit", "brands_limit", "seats_limit")

PLANS_BY_LIMITS = {
    (200, 200): "STARTER",
    (1000, 1000): "PRO_50",
    (2500, 2500): "PRO_200",
    (5000, 5000): "PRO_500",
    (UNLIMITED, UNLIMITED): "AGENCY",
}

PLAN_UPGRADES = {
    "STARTER": {
        "code": "PRO_50",
        "name": "Pro-50 Plan",
        "price": "29.99",
        "benefits": ["2 brands", "1,000 posts/month", "60 video minutes"],
    },
    "PRO_50": {
        "code": "PRO_200",
        "name": "Pro-200 Plan",
        "price": "49.99",
        "benefits": ["3 brands", "2,500 posts/month", "150 video minutes", "A/B tests"],
    },
    "PRO_200": {
        "code": "PRO_500",
        "name": "Pro-500 Plan",
        "price": "79.99",
        "benefits": ["5 brands", "5,000 posts/month", "300 video minutes", "Priority queue"],
    },
    "PRO_500": {
        "code": "AGENCY",
        "name": "Agency Command",
        "price": "Contact Sales",
        "benefits": ["Unlimited brands", "Pooled credits", "White-label", "SSO/SAML"],
    },
}


@dataclass
class LimitEvaluation:
    allowed: bool
    current_usage: int
    limit: int
    message: str = ""


def evaluate_limit(limit_type: str, current_usage: int, limit: int, cost: int = 1) -> LimitEvaluation:
    """
    Decide whether ``cost`` more units fit under ``limit``.

    Posts and brands are count limits (reject once the count reaches the
    limit); credits and video minutes are checked against the prospective
    total so a request can never overshoot by its own cost. Limits of 0 or
    -1 never reject.
    """
    if limit_type in ("posts", "brands"):
        if limit > 0 and current_usage >= limit:
            label = "Post" if limit_type == "posts" else "Brand"
            return LimitEvaluation(False, current_usage, limit, f"{label} limit reached ({current_usage}/{limit})")
        return LimitEvaluation(True, current_usage, limit)

    if limit_type in ("credits", "video_minutes"):
        if limit > 0 and current_usage + cost > limit:
            if limit_type == "credits":
                message = f"Not enough credits ({current_usage + cost}/{limit} required)"
            else:
                message = f"Video minutes limit reached ({current_usage + cost}/{limit} required)"
            return LimitEvaluation(False, current_usage, limit, message)
        return LimitEvaluation(True, current_usage, limit)

    raise ValueError(f"Invalid limit type: {limit_type}")


def usage_percentage(used: int, limit: int) -> int:
    """Rounded share of the limit consumed; 0 when the limit is not positive."""
    if limit <= 0:
        return 0
    return (used * 200 + limit) // (2 * limit)


def calculate_usage_percentage(used: int, limit: int) -> int:
    """Usage percentage for display, capped at 100."""
    return min(usage_percentage(used, limit), 100)


def is_approaching_limit(used: int, limit: int, threshold: float = 0.8) -> bool:
    if limit <= 0:
        return False
    return used / limit >= threshold


def format_usage(used: int, limit: int) -> str:
    if limit <= 0:
        return f"{used} used"
    return f"{used:,}/{limit:,}"


def determine_plan_from_bucket(bucket: Optional[UsageBucket]) -> str:
    """Infer the plan from a bucket's raw (posts, credits) limits."""
    if bucket is None:
        return "FREE"
    return PLANS_BY_LIMITS.get((bucket.posts_limit, bucket.credits_limit), "UNKNOWN")


def resolve_plan_code(bucket: Optional[UsageBucket]) -> str:
    """Prefer the plan recorded on the bucket; fall back to limit inference."""
    if bucket is not None and bucket.plan_code:
        return bucket.plan_code
    return determine_plan_from_bucket(bucket)


def get_next_plan(current_plan: str) -> Optional[Dict[str, Any]]:
    return PLAN_UPGRADES.get(current_plan)


def _addon_suggestion(addon_type: str) -> Dict[str, Any]:
    addon = ADDON_CONFIGS[addon_type]
    price = f"${addon['price'] / 100:.2f}"
    if addon["recurring"]:
        price += "/month"
    return {
        "type": "addon",
        "name": addon["name"],
        "price": price,
        "action": "purchase_addon",
        "addonType": addon_type,
    }


def _upgrade_suggestion(plan_code: str, name: str, price: str, benefits: List[str]) -> Dict[str, Any]:
    return {
        "type": "upgrade",
        "name": name,
        "price": price,
        "action": "upgrade_plan",
        "planCode": plan_code,
        "benefits": benefits,
    }


def generate_upgrade_suggestions(limit_type: str, current_plan: str) -> List[Dict[str, Any]]:
    """Remediation offers for a rejected limit, given the caller's plan."""
    suggestions: List[Dict[str, Any]] = []

    if limit_type == "credits":
        suggestions.append(_addon_suggestion("CREDITS_500"))
        if current_plan == "STARTER":
            suggestions.append(_upgrade_suggestion(
                "PRO_50", "Pro-50 Plan", "$29.99/month",
                ["1,000 credits/month", "60 video minutes", "Quick Ads"],
            ))
    elif limit_type == "posts":
        suggestions.append(_addon_suggestion("POSTS_1000"))
        if current_plan == "STARTER":
            suggestions.append(_upgrade_suggestion(
                "PRO_50", "Pro-50 Plan", "$29.99/month",
                ["1,000 posts/month", "1,000 credits", "Marketing Plan"],
            ))
    elif limit_type == "video_minutes":
        suggestions.append(_addon_suggestion("VIDEO_60"))
        suggestions.append(_upgrade_suggestion(
            "PRO_50", "Pro-50 Plan", "$29.99/month",
            ["60 video minutes/month", "1,000 posts", "1,000 credits"],
        ))
    elif limit_type == "brands":
        suggestions.append(_addon_suggestion("BRAND"))
        if current_plan != "AGENCY":
            next_plan = get_next_plan(current_plan)
            if next_plan:
                price = next_plan["price"]
                suggestions.append(_upgrade_suggestion(
                    next_plan["code"],
                    next_plan["name"],
                    f"${price}/month" if price[0].isdigit() else price,
                    next_plan["benefits"],
                ))

    return suggestions


def _to_bucket(doc: Dict[str, Any]) -> UsageBucket:
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    return UsageBucket(**doc)


def _limits_for(plan_code: str, boosts: Dict[str, int]) -> Dict[str, int]:
    limits = plan_limits(plan_code)
    for field, base in limits.items():
        if base != UNLIMITED:
            limits[field] = base + int(boosts.get(field, 0))
    return limits


class UsageLedger:
    def __init__(self):
        self.collection_name = "usage_buckets"

    async def get_collection(self):
        db = await get_database()
        return db[self.collection_name]

    async def get_live_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Most recently updated subscription that still grants entitlements."""
        db = await get_database()
        cursor = db.subscriptions.find(
            {"user_id": user_id, "status": {"$in": list(LIVE_STATUSES)}}
        ).sort("updated_at", DESCENDING).limit(1)
        docs = await cursor.to_list(length=1)
        return docs[0] if docs else None

    async def get_current_usage_bucket(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[UsageBucket]:
        """
        Fetch-or-create the caller's bucket for the current billing period.

        Returns None when the user has no live subscription. Store failures
        raise ``UsageLedgerError`` so callers can fail closed.
        """
        now = now or utcnow()
        try:
            subscription = await self.get_live_subscription(user_id)
            if not subscription:
                return None

            plan_code = subscription.get("plan_code")
            if plan_code not in PLAN_CONFIGS:
                logger.error(f"Subscription for user {user_id} has unknown plan code {plan_code}")
                return None

            period_start = subscription.get("current_period_start")
            period_end = subscription.get("current_period_end")
            if not (period_start and period_end and period_start <= now < period_end):
                period_start, period_end = month_bounds(now)

            collection = await self.get_collection()
            query = {"user_id": user_id, "period_start": period_start}
            fresh = {
                "subscription_id": str(subscription["_id"]),
                "plan_code": plan_code,
                "period_end": period_end,
                "posts_used": 0,
                "credits_used": 0,
                "video_minutes_used": 0,
                "addon_boosts": {},
                "created_at": now,
                "updated_at": now,
                **plan_limits(plan_code),
            }
            try:
                doc = await collection.find_one_and_update(
                    query,
                    {"$setOnInsert": fresh},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # lost the insert race to a concurrent request; its row wins
                doc = await collection.find_one(query)

            if doc.get("plan_code") != plan_code:
                doc = await self._rebase_limits(doc, plan_code, str(subscription["_id"]), now)
            return _to_bucket(doc)
        except PyMongoError as e:
            logger.error(f"Error getting usage bucket for user {user_id}: {e}")
            raise UsageLedgerError(str(e)) from e

    async def _rebase_limits(
        self, doc: Dict[str, Any], plan_code: str, subscription_id: str, now: datetime
    ) -> Dict[str, Any]:
        """Move a bucket to a new plan's limits, keeping purchased add-on boosts."""
        collection = await self.get_collection()
        limits = _limits_for(plan_code, doc.get("addon_boosts") or {})
        updated = await collection.find_one_and_update(
            {"_id": doc["_id"]},
            {"$set": {
                **limits,
                "plan_code": plan_code,
                "subscription_id": subscription_id,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Usage bucket {doc['_id']} rebased from {doc.get('plan_code')} to {plan_code}")
        return updated or doc

    async def reserve(
        self,
        user_id: str,
        limit_type: str,
        amount: int = 1,
        bucket: Optional[UsageBucket] = None,
    ) -> ReservationResult:
        """
        Atomically check-and-increment a counter.

        The increment only applies when the stored usage still leaves room
        for ``amount`` under the stored limit; a concurrent change to the
        limit itself (add-on purchase) invalidates the attempt once and it
        is retried against the fresh bucket.
        """
        used_field, limit_field = COUNTER_FIELDS[limit_type]
        bucket = bucket or await self.get_current_usage_bucket(user_id)
        if bucket is None:
            return ReservationResult(allowed=False)

        collection = await self.get_collection()
        for _ in range(2):
            limit = getattr(bucket, limit_field)
            query: Dict[str, Any] = {"_id": _object_id(bucket.id), limit_field: limit}
            if limit > 0:
                if limit_type == "posts":
                    query[used_field] = {"$lt": limit}
                else:
                    query[used_field] = {"$lte": limit - amount}
            try:
                doc = await collection.find_one_and_update(
                    query,
                    {"$inc": {used_field: amount}, "$set": {"updated_at": utcnow()}},
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError as e:
                logger.error(f"Error reserving {amount} {limit_type} for user {user_id}: {e}")
                raise UsageLedgerError(str(e)) from e

            if doc is not None:
                reserved = _to_bucket(doc)
                return ReservationResult(
                    allowed=True,
                    bucket=reserved,
                    current_usage=getattr(reserved, used_field),
                    limit=limit,
                )

            fresh = await collection.find_one({"_id": _object_id(bucket.id)})
            if fresh is None:
                break
            bucket = _to_bucket(fresh)
            if getattr(bucket, limit_field) == limit:
                break

        return ReservationResult(
            allowed=False,
            bucket=bucket,
            current_usage=getattr(bucket, used_field),
            limit=getattr(bucket, limit_field),
        )

    async def release(self, bucket_id: str, limit_type: str, amount: int = 1) -> bool:
        """Give back a reservation whose operation did not succeed."""
        used_field, _ = COUNTER_FIELDS[limit_type]
        collection = await self.get_collection()
        result = await collection.update_one(
            {"_id": _object_id(bucket_id), used_field: {"$gte": amount}},
            {"$inc": {used_field: -amount}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            logger.warning(f"Could not release {amount} {limit_type} on bucket {bucket_id}")
            return False
        logger.info(f"Released {amount} {limit_type} on bucket {bucket_id}")
        return True

    async def increment_usage(self, user_id: str, limit_type: str, amount: int = 1) -> bool:
        """Unconditionally add ``amount`` to the current bucket's counter."""
        if limit_type not in COUNTER_FIELDS:
            logger.warning(f"Ignoring usage increment for non-counter type {limit_type}")
            return False
        used_field, _ = COUNTER_FIELDS[limit_type]
        bucket = await self.get_current_usage_bucket(user_id)
        if bucket is None:
            logger.warning(f"No usage bucket to increment for user {user_id}")
            return False
        collection = await self.get_collection()
        result = await collection.update_one(
            {"_id": _object_id(bucket.id)},
            {"$inc": {used_field: amount}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count == 1

    async def raise_limit(self, user_id: str, limit_field: str, amount: int) -> Optional[UsageBucket]:
        """Additively raise a limit on the current bucket; unlimited stays unlimited."""
        if limit_field not in LIMIT_FIELDS:
            raise ValueError(f"Unknown limit field: {limit_field}")
        bucket = await self.get_current_usage_bucket(user_id)
        if bucket is None:
            logger.error(f"No usage bucket to raise {limit_field} for user {user_id}")
            return None
        if getattr(bucket, limit_field) == UNLIMITED:
            logger.info(f"{limit_field} already unlimited for user {user_id}")
            return bucket

        collection = await self.get_collection()
        doc = await collection.find_one_and_update(
            {"_id": _object_id(bucket.id), limit_field: {"$ne": UNLIMITED}},
            {
                "$inc": {limit_field: amount, f"addon_boosts.{limit_field}": amount},
                "$set": {"updated_at": utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        return _to_bucket(doc) if doc else bucket

    async def count_active_brands(self, user_id: str) -> int:
        db = await get_database()
        return await db.brands.count_documents({"user_id": user_id, "is_active": True})

    async def has_watermark(self, user_id: str) -> bool:
        subscription = await self.get_live_subscription(user_id)
        if not subscription:
            return True
        plan = PLAN_CONFIGS.get(subscription.get("plan_code"), {})
        return bool(plan.get("features", {}).get("watermark", False))

    async def track_event(self, user_id: str, event_name: str, properties: Optional[Dict[str, Any]] = None):
        """Record an analytics event; failures are logged, never raised."""
        try:
            db = await get_database()
            await db.analytics_events.insert_one({
                "user_id": user_id,
                "event_name": event_name,
                "event_properties": properties or {},
                "created_at": utcnow(),
            })
        except Exception as e:
            logger.error(f"Error tracking event {event_name} for user {user_id}: {e}")


def _object_id(value: str):
    return ObjectId(value) if ObjectId.is_valid(value) else value


usage_ledger = UsageLedger()
