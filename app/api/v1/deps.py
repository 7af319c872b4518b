from fastapi import Depends, Request

from app.services.analytics_cache import AnalyticsCache
from app.services.cache import TTLCache
from app.services.lifecycle_emails import LifecycleEmailJob
from app.services.subscription_reconciler import SubscriptionReconciler


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_analytics_cache(cache: TTLCache = Depends(get_cache)) -> AnalyticsCache:
    return AnalyticsCache(cache)


def get_lifecycle_job(request: Request) -> LifecycleEmailJob:
    return request.app.state.lifecycle_job


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return request.app.state.reconciler
