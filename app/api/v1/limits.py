"""
Usage metering for API routes.

``check_limits(limit_type, credit_cost)`` is a dependency that resolves the
caller's usage bucket and refuses the request with a 402 when the plan does
not allow it. By default counters are reserved atomically during the check;
``UsageMeteredRoute`` then settles the reservation once the handler has
produced its response: a failed operation gives the units back, a
successful one records the analytics event. With
``ATOMIC_USAGE_RESERVATION`` off, the check only reads and the increment is
queued after a successful response instead.

Brands have no counter to reserve; their routes hold ``brand_slot`` across
the live count and the insert instead.
"""

import asyncio
import json
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List

from fastapi import Depends, Request, Response
from fastapi.routing import APIRoute
from pymongo.errors import PyMongoError

from app.api.v1.auth import get_current_user_id
from app.core.config import settings
from app.core.exceptions import EntitlementError, InvalidLimitTypeError, UsageCheckError, UsageLedgerError
from app.schemas.usage import UsageBucket, UsageInfo
from app.services.usage_ledger import (
    COUNTER_FIELDS,
    LIMIT_TYPES,
    evaluate_limit,
    generate_upgrade_suggestions,
    resolve_plan_code,
    usage_ledger,
    usage_percentage,
)

logger = logging.getLogger(__name__)

_brand_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@asynccontextmanager
async def brand_slot(user_id: str):
    """Serialize brand creation per user within this process."""
    lock = _brand_locks.get(user_id)
    if lock is None:
        lock = _brand_locks[user_id] = asyncio.Lock()
    async with lock:
        yield


def no_subscription_body() -> Dict[str, Any]:
    return {
        "success": False,
        "error": "No active subscription",
        "code": "NO_SUBSCRIPTION",
        "upgradeRequired": True,
    }


def limit_exceeded_body(
    limit_type: str,
    message: str,
    current_usage: int,
    limit: int,
    credit_cost: int,
    suggestions: List[Dict[str, Any]],
) -> Dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "code": "LIMIT_EXCEEDED",
        "details": {
            "limitType": limit_type,
            "currentUsage": current_usage,
            "limit": limit,
            "usagePercentage": usage_percentage(current_usage, limit) if limit > 0 else 100,
            "creditCost": credit_cost,
        },
        "upgradeRequired": True,
        "suggestions": suggestions,
    }


def _reject(limit_type: str, bucket: UsageBucket, message: str, current: int, limit: int, cost: int):
    suggestions = generate_upgrade_suggestions(limit_type, resolve_plan_code(bucket))
    logger.info(f"Usage limit hit for user {bucket.user_id}: {message}")
    raise EntitlementError(limit_exceeded_body(limit_type, message, current, limit, cost, suggestions))


async def enforce_limits(user_id: str, limit_type: str, credit_cost: int = 1) -> UsageInfo:
    """Check (and, for counters, reserve) ``credit_cost`` units or raise."""
    if limit_type not in LIMIT_TYPES:
        raise InvalidLimitTypeError(limit_type)

    try:
        bucket = await usage_ledger.get_current_usage_bucket(user_id)
    except UsageLedgerError:
        raise UsageCheckError()
    if bucket is None:
        raise EntitlementError(no_subscription_body())

    if limit_type == "brands":
        try:
            current = await usage_ledger.count_active_brands(user_id)
        except PyMongoError as e:
            logger.error(f"Error counting brands for user {user_id}: {e}")
            raise UsageCheckError("Failed to check brand limits")
        evaluation = evaluate_limit("brands", current, bucket.brands_limit)
        if not evaluation.allowed:
            _reject("brands", bucket, evaluation.message, current, bucket.brands_limit, credit_cost)
        return UsageInfo(bucket=bucket, limit_type=limit_type, credit_cost=credit_cost)

    used_field, limit_field = COUNTER_FIELDS[limit_type]
    if not settings.ATOMIC_USAGE_RESERVATION:
        current, limit = getattr(bucket, used_field), getattr(bucket, limit_field)
        evaluation = evaluate_limit(limit_type, current, limit, credit_cost)
        if not evaluation.allowed:
            _reject(limit_type, bucket, evaluation.message, current, limit, credit_cost)
        return UsageInfo(bucket=bucket, limit_type=limit_type, credit_cost=credit_cost)

    try:
        result = await usage_ledger.reserve(user_id, limit_type, credit_cost, bucket=bucket)
    except UsageLedgerError:
        raise UsageCheckError()
    if not result.allowed:
        if result.bucket is None:
            raise EntitlementError(no_subscription_body())
        evaluation = evaluate_limit(limit_type, result.current_usage, result.limit, credit_cost)
        message = evaluation.message or f"{limit_type} limit reached ({result.current_usage}/{result.limit})"
        _reject(limit_type, result.bucket, message, result.current_usage, result.limit, credit_cost)
    return UsageInfo(bucket=result.bucket, limit_type=limit_type, credit_cost=credit_cost, reserved=True)


def check_limits(limit_type: str, credit_cost: int = 1) -> Callable:
    """Dependency factory: meter ``credit_cost`` units of ``limit_type`` for the caller."""
    if limit_type not in LIMIT_TYPES:
        raise ValueError(f"Invalid limit type: {limit_type}")

    async def dependency(request: Request, user_id: str = Depends(get_current_user_id)) -> UsageInfo:
        usage_info = await enforce_limits(user_id, limit_type, credit_cost)
        request.state.usage_info = usage_info
        return usage_info

    return dependency


async def check_watermark(user_id: str = Depends(get_current_user_id)) -> bool:
    """Whether output for the caller must be watermarked; errors mean yes."""
    try:
        return await usage_ledger.has_watermark(user_id)
    except Exception as e:
        logger.error(f"Error checking watermark for user {user_id}: {e}")
        return True


def response_succeeded(response: Response) -> bool:
    """A response counts as success unless it is an error status or says ``success: false``."""
    if response.status_code >= 400:
        return False
    body = getattr(response, "body", None)
    if not body or "json" not in (response.media_type or ""):
        return True
    try:
        payload = json.loads(body)
    except ValueError:
        return True
    return not (isinstance(payload, dict) and payload.get("success") is False)


def settle_usage(request: Request, succeeded: bool) -> None:
    """Queue the bookkeeping for a metered request whose response is final."""
    usage_info = getattr(request.state, "usage_info", None)
    if usage_info is None:
        return

    queue = request.app.state.task_queue
    user_id = usage_info.bucket.user_id
    limit_type = usage_info.limit_type
    amount = usage_info.credit_cost

    if not succeeded:
        if usage_info.reserved:
            queue.submit(usage_ledger.release, usage_info.bucket.id, limit_type, amount, name="usage_release")
        return

    if not usage_info.reserved and limit_type in COUNTER_FIELDS:
        queue.submit(usage_ledger.increment_usage, user_id, limit_type, amount, name="usage_increment")
    queue.submit(
        usage_ledger.track_event,
        user_id,
        f"{limit_type}_used",
        {"amount": amount, "endpoint": request.url.path},
        name="usage_event",
    )


class UsageMeteredRoute(APIRoute):
    """Route class that settles metered usage after the handler returns."""

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def metered_route_handler(request: Request) -> Response:
            try:
                response = await original_route_handler(request)
            except Exception:
                settle_usage(request, succeeded=False)
                raise
            settle_usage(request, succeeded=response_succeeded(response))
            return response

        return metered_route_handler
