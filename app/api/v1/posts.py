from fastapi import APIRouter, Depends, Query
from app.api.v1.auth import get_current_user_id
from app.api.v1.deps import get_analytics_cache
from app.api.v1.limits import UsageMeteredRoute, check_limits
from app.schemas.content import CreatePost
from app.schemas.usage import UsageInfo
from app.services.analytics_cache import AnalyticsCache
from app.services.content_service import content_service

router = APIRouter(prefix="/posts", tags=["Posts"], route_class=UsageMeteredRoute)


@router.post("")
async def create_post(
    post_data: CreatePost,
    usage: UsageInfo = Depends(check_limits("posts")),
    analytics: AnalyticsCache = Depends(get_analytics_cache),
):
    """Create a post; counts against the monthly post allowance."""
    user_id = usage.bucket.user_id
    post = await content_service.create_post(user_id, post_data)
    analytics.invalidate_user_cache(user_id)
    return {"success": True, "post": post.model_dump()}


@router.get("")
async def list_posts(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    posts = await content_service.list_posts(user_id, limit)
    return {"success": True, "posts": [post.model_dump() for post in posts]}
