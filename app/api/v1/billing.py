from fastapi import APIRouter, HTTPException, Depends, Query
import stripe
from typing import Any, Dict, Optional
from app.api.v1.auth import get_current_user_id
from app.api.v1.limits import no_subscription_body
from app.core.config import settings
from app.core.exceptions import BillingConfigurationError, InvalidLimitTypeError, UsageCheckError, UsageLedgerError
from app.core.plans import ADDON_CONFIGS, PLAN_CONFIGS, addon_price_ids, plan_price_ids
from app.db.mongo import get_database
from app.schemas.subscription import CheckoutRequest, Subscription
from app.services.usage_ledger import (
    COUNTER_FIELDS,
    LIMIT_TYPES,
    calculate_usage_percentage,
    evaluate_limit,
    format_usage,
    generate_upgrade_suggestions,
    is_approaching_limit,
    resolve_plan_code,
    usage_ledger,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

stripe.api_key = settings.STRIPE_SECRET_KEY or ""

EMPTY_USAGE = {
    "posts_used": 0,
    "posts_limit": 0,
    "credits_used": 0,
    "credits_limit": 0,
    "video_minutes_used": 0,
    "video_minutes_limit": 0,
    "brands_used": 0,
    "brands_limit": 0,
    "seats_limit": 0,
    "postsPercentage": 0,
    "creditsPercentage": 0,
    "videoPercentage": 0,
}


async def _current_bucket(user_id: str):
    try:
        return await usage_ledger.get_current_usage_bucket(user_id)
    except UsageLedgerError:
        raise UsageCheckError()


@router.get("/plans")
async def get_plans():
    """Plan and add-on catalogue."""
    return {
        "success": True,
        "plans": list(PLAN_CONFIGS.values()),
        "addons": list(ADDON_CONFIGS.values()),
    }


@router.get("/subscription")
async def get_subscription(user_id: str = Depends(get_current_user_id)):
    db = await get_database()
    doc = await db.subscriptions.find_one({"user_id": user_id}, sort=[("updated_at", -1)])
    if not doc:
        return {"success": True, "subscription": None, "usage": None}

    doc["_id"] = str(doc["_id"])
    bucket = await _current_bucket(user_id)
    return {
        "success": True,
        "subscription": Subscription(**doc).model_dump(),
        "usage": bucket.model_dump() if bucket else None,
    }


@router.get("/usage")
async def get_usage(user_id: str = Depends(get_current_user_id)):
    bucket = await _current_bucket(user_id)
    if bucket is None:
        return {"success": True, "planCode": None, "usage": dict(EMPTY_USAGE)}

    usage = bucket.model_dump()
    usage["brands_used"] = await usage_ledger.count_active_brands(user_id)
    usage["postsPercentage"] = calculate_usage_percentage(bucket.posts_used, bucket.posts_limit)
    usage["creditsPercentage"] = calculate_usage_percentage(bucket.credits_used, bucket.credits_limit)
    usage["videoPercentage"] = calculate_usage_percentage(bucket.video_minutes_used, bucket.video_minutes_limit)

    counters = {
        limit_type: (getattr(bucket, used_field), getattr(bucket, limit_field))
        for limit_type, (used_field, limit_field) in COUNTER_FIELDS.items()
    }
    counters["brands"] = (usage["brands_used"], bucket.brands_limit)
    usage["display"] = {limit_type: format_usage(*pair) for limit_type, pair in counters.items()}
    usage["approachingLimits"] = [
        limit_type for limit_type, pair in counters.items() if is_approaching_limit(*pair)
    ]
    return {"success": True, "planCode": resolve_plan_code(bucket), "usage": usage}


@router.get("/limits/check")
async def check_limit(
    type: str = Query(...),
    amount: int = Query(1, ge=1, le=10000),
    user_id: str = Depends(get_current_user_id),
):
    """Pre-flight limit check; never changes usage."""
    if type not in LIMIT_TYPES:
        raise InvalidLimitTypeError(type)

    bucket = await _current_bucket(user_id)
    if bucket is None:
        return {**no_subscription_body(), "success": True, "allowed": False}

    if type == "brands":
        current, limit = await usage_ledger.count_active_brands(user_id), bucket.brands_limit
    else:
        used_field, limit_field = COUNTER_FIELDS[type]
        current, limit = getattr(bucket, used_field), getattr(bucket, limit_field)

    evaluation = evaluate_limit(type, current, limit, amount)
    result: Dict[str, Any] = {
        "success": True,
        "allowed": evaluation.allowed,
        "limitType": type,
        "currentUsage": current,
        "limit": limit,
        "amount": amount,
    }
    if not evaluation.allowed:
        result["error"] = evaluation.message
        result["suggestions"] = generate_upgrade_suggestions(type, resolve_plan_code(bucket))
    return result


@router.get("/watermark")
async def get_watermark(user_id: str = Depends(get_current_user_id)):
    try:
        has_watermark = await usage_ledger.has_watermark(user_id)
    except Exception as e:
        logger.error(f"Error checking watermark for user {user_id}: {e}")
        has_watermark = True
    return {"success": True, "hasWatermark": has_watermark}


@router.get("/upgrade-suggestions")
async def get_upgrade_suggestions(
    limitType: str = Query(...),
    user_id: str = Depends(get_current_user_id),
):
    if limitType not in LIMIT_TYPES:
        raise InvalidLimitTypeError(limitType)
    bucket = await _current_bucket(user_id)
    plan_code = resolve_plan_code(bucket)
    return {
        "success": True,
        "planCode": plan_code,
        "suggestions": generate_upgrade_suggestions(limitType, plan_code),
    }


async def _get_or_create_customer(user_id: str) -> str:
    db = await get_database()
    profile = await db.user_profiles.find_one({"user_id": user_id}) or {}
    customer_id = profile.get("stripe_customer_id")
    if customer_id:
        return customer_id

    customer = stripe.Customer.create(
        email=profile.get("email"),
        metadata={"userId": user_id},
    )
    await db.user_profiles.update_one(
        {"user_id": user_id},
        {"$set": {"stripe_customer_id": customer.id}},
    )
    logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
    return customer.id


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id)
):
    """Start a Stripe Checkout Session for a plan or an add-on."""
    if not settings.STRIPE_SECRET_KEY:
        raise BillingConfigurationError("Stripe API key not configured")
    if bool(request.planCode) == bool(request.addonType):
        raise HTTPException(status_code=400, detail="Provide exactly one of planCode or addonType")

    frontend_url = settings.FRONTEND_URL
    success_url = request.successUrl or f"{frontend_url}/dashboard?success=true"
    cancel_url = request.cancelUrl or f"{frontend_url}/pricing?canceled=true"

    extra: Dict[str, Any] = {}
    if request.planCode:
        price_id: Optional[str] = plan_price_ids().get(request.planCode)
        if not price_id:
            raise HTTPException(status_code=400, detail=f"Plan {request.planCode} is not sold through checkout")
        mode = "subscription"
        metadata = {"userId": user_id, "planCode": request.planCode}
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        trial_days = PLAN_CONFIGS[request.planCode]["trial_days"]
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        extra["subscription_data"] = subscription_data
    else:
        addon = ADDON_CONFIGS[request.addonType]
        price_id = addon_price_ids()[request.addonType]
        mode = "subscription" if addon["recurring"] else "payment"
        metadata = {"userId": user_id, "addonType": request.addonType}

    try:
        customer_id = await _get_or_create_customer(user_id)
        checkout_session = stripe.checkout.Session.create(
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode=mode,
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata=metadata,
            **extra,
        )
    except stripe.StripeError as e:
        logger.error(f"Error creating checkout session for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "sessionId": checkout_session.id, "url": checkout_session.url}
