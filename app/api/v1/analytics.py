from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from typing import Optional
from app.api.v1.auth import get_current_user_id
from app.api.v1.deps import get_analytics_cache, get_cache
from app.services.analytics_cache import AnalyticsCache
from app.services.cache import TTLCache

router = APIRouter(prefix="/analytics", tags=["Analytics"])


def _respond(result: dict):
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result


@router.get("/overview")
async def get_overview(
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    """Last 30 days of post totals and engagement."""
    return _respond(await analytics.cache_analytics_overview(user_id))


@router.get("/metrics")
async def get_metrics(
    platform: Optional[str] = None,
    days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    return _respond(await analytics.cache_analytics_metrics(user_id, platform, days))


@router.get("/top-posts")
async def get_top_posts(
    limit: int = Query(10, ge=1, le=100),
    platform: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    return _respond(await analytics.cache_top_posts(user_id, limit, platform))


@router.get("/cache/stats")
async def get_cache_stats(
    user_id: str = Depends(get_current_user_id),
    cache: TTLCache = Depends(get_cache),
):
    return {"success": True, "stats": cache.get_stats()}


@router.post("/cache/clear")
async def clear_user_cache(
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    """Drop the caller's cached aggregates."""
    removed = analytics.invalidate_user_cache(user_id)
    return {"success": True, "removed": removed}


@router.post("/cache/preload")
async def preload_user_cache(
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    return {"success": await analytics.preload_user_data(user_id)}
