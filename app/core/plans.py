"""Static plan, add-on and credit-cost tables consumed by billing and metering."""

from typing import Any, Dict, Optional

from app.core.config import settings

UNLIMITED = -1

PLAN_CONFIGS: Dict[str, Dict[str, Any]] = {
    "STARTER": {
        "code": "STARTER",
        "name": "Starter Pack",
        "price": 999,  # cents
        "trial_days": 7,
        "limits": {
            "posts_limit": 200,
            "credits_limit": 200,
            "video_minutes_limit": 0,
            "brands_limit": 1,
            "seats_limit": 1,
        },
        "features": {
            "social_connections": 5,
            "brand_kit": True,
            "smart_scheduler": True,
            "basic_analytics": True,
            "watermark": True,
            "template_marketplace": True,
        },
    },
    "PRO_50": {
        "code": "PRO_50",
        "name": "Pro-50",
        "price": 2999,
        "trial_days": 0,
        "limits": {
            "posts_limit": 1000,
            "credits_limit": 1000,
            "video_minutes_limit": 60,
            "brands_limit": 2,
            "seats_limit": 2,
        },
        "features": {
            "social_connections": 8,
            "brand_kit": True,
            "smart_scheduler": True,
            "quick_ads": True,
            "marketing_plan": True,
            "api_webhooks": True,
            "website_builder": True,
            "websites": 1,
        },
    },
    "PRO_200": {
        "code": "PRO_200",
        "name": "Pro-200",
        "price": 4999,
        "trial_days": 0,
        "limits": {
            "posts_limit": 2500,
            "credits_limit": 2500,
            "video_minutes_limit": 150,
            "brands_limit": 3,
            "seats_limit": 4,
        },
        "features": {
            "social_connections": 12,
            "brand_kit": True,
            "smart_scheduler": True,
            "quick_ads": True,
            "marketing_plan": True,
            "api_webhooks": True,
            "ab_tests": True,
            "advanced_analytics": True,
            "approvals": True,
            "website_builder": True,
            "websites": 3,
        },
    },
    "PRO_500": {
        "code": "PRO_500",
        "name": "Pro-500",
        "price": 7999,
        "trial_days": 0,
        "limits": {
            "posts_limit": 5000,
            "credits_limit": 5000,
            "video_minutes_limit": 300,
            "brands_limit": 5,
            "seats_limit": 6,
        },
        "features": {
            "social_connections": 15,
            "brand_kit": True,
            "smart_scheduler": True,
            "quick_ads": True,
            "marketing_plan": True,
            "api_webhooks": True,
            "ab_tests": True,
            "advanced_analytics": True,
            "approvals": True,
            "priority_queue": True,
            "website_builder": True,
            "websites": 5,
        },
    },
    "AGENCY": {
        "code": "AGENCY",
        "name": "Agency Command",
        "price": 15000,  # contact sales
        "trial_days": 0,
        "limits": {
            "posts_limit": UNLIMITED,
            "credits_limit": UNLIMITED,
            "video_minutes_limit": UNLIMITED,
            "brands_limit": UNLIMITED,
            "seats_limit": UNLIMITED,
        },
        "features": {
            "social_connections": UNLIMITED,
            "brand_kit": True,
            "smart_scheduler": True,
            "quick_ads": True,
            "marketing_plan": True,
            "api_webhooks": True,
            "ab_tests": True,
            "advanced_analytics": True,
            "approvals": True,
            "priority_queue": True,
            "white_label": True,
            "audit_logs": True,
            "sso_saml": True,
            "priority_sla": True,
            "pooled_credits": True,
            "higher_api_limits": True,
        },
    },
}

ADDON_CONFIGS: Dict[str, Dict[str, Any]] = {
    "CREDITS_500": {
        "type": "CREDITS_500",
        "name": "+500 AI Credits",
        "price": 500,
        "amount": 500,
        "limit_field": "credits_limit",
        "recurring": False,
    },
    "VIDEO_60": {
        "type": "VIDEO_60",
        "name": "+60 Video Minutes",
        "price": 800,
        "amount": 60,
        "limit_field": "video_minutes_limit",
        "recurring": False,
    },
    "POSTS_1000": {
        "type": "POSTS_1000",
        "name": "+1,000 Scheduled Posts",
        "price": 500,
        "amount": 1000,
        "limit_field": "posts_limit",
        "recurring": False,
    },
    "BRAND": {
        "type": "BRAND",
        "name": "Extra Brand",
        "price": 500,
        "amount": 1,
        "limit_field": "brands_limit",
        "recurring": True,
    },
    "SEAT": {
        "type": "SEAT",
        "name": "Extra Seat",
        "price": 300,
        "amount": 1,
        "limit_field": "seats_limit",
        "recurring": True,
    },
}

CREDIT_COSTS = {
    "POST_COPY": 1,
    "THUMBNAIL": 5,
    "LOGO_CONCEPT": 10,
    "VIDEO_MINUTE": 20,
}

PLAN_TIERS = {
    "STARTER": "starter",
    "PRO_50": "pro",
    "PRO_200": "pro",
    "PRO_500": "pro",
    "AGENCY": "agency",
}


def plan_price_ids() -> Dict[str, str]:
    """Stripe price id per plan code."""
    return {
        "STARTER": settings.STRIPE_PRICE_STARTER,
        "PRO_50": settings.STRIPE_PRICE_PRO_50,
        "PRO_200": settings.STRIPE_PRICE_PRO_200,
        "PRO_500": settings.STRIPE_PRICE_PRO_500,
    }


def addon_price_ids() -> Dict[str, str]:
    """Stripe price id per add-on code."""
    return {
        "CREDITS_500": settings.STRIPE_ADDON_PRICE_CREDITS_500,
        "VIDEO_60": settings.STRIPE_ADDON_PRICE_VIDEO_60,
        "POSTS_1000": settings.STRIPE_ADDON_PRICE_POSTS_1000,
        "BRAND": settings.STRIPE_ADDON_PRICE_BRAND,
        "SEAT": settings.STRIPE_ADDON_PRICE_SEAT,
    }


def plan_for_price_id(price_id: Optional[str]) -> Optional[str]:
    """Reverse-map a Stripe price id to a plan code."""
    if not price_id:
        return None
    for plan_code, configured in plan_price_ids().items():
        if configured == price_id:
            return plan_code
    return None


def plan_limits(plan_code: str) -> Dict[str, int]:
    config = PLAN_CONFIGS.get(plan_code)
    if not config:
        raise KeyError(f"Unknown plan code: {plan_code}")
    return dict(config["limits"])


def get_addon_amount(addon_type: str) -> int:
    return ADDON_CONFIGS.get(addon_type, {}).get("amount", 0)


def map_plan_code_to_tier(plan_code: Optional[str]) -> str:
    return PLAN_TIERS.get(plan_code or "", "free")
