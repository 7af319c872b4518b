"""
Read-through cached analytics aggregates over ``content_posts`` and ``post_metrics``.

Every helper checks the injected ``TTLCache`` first and only on a miss runs
the aggregate query, storing the result under a ``prefix:user:...`` key.
Results are ``{"success", "data", "fromCache"}``; a failed query returns
``{"success": False, "error"}`` and leaves the cache untouched.
"""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.db.mongo import get_database
from app.services.cache import TTLCache
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

CACHE_PREFIXES = ("analytics_overview", "analytics_metrics", "top_posts")
OVERVIEW_WINDOW_DAYS = 30


def _engagement(metric: Dict[str, Any]) -> int:
    return (metric.get("likes") or 0) + (metric.get("shares") or 0) + (metric.get("comments") or 0)


def _rate(engaged: int, views: int) -> float:
    return round(engaged / views * 100, 2) if views > 0 else 0


def _serialize_post(post: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in post.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


class AnalyticsCache:
    def __init__(self, cache: TTLCache):
        self.cache = cache

    async def _posts_with_metrics(
        self, user_id: str, since: Optional[datetime] = None, platform: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        db = await get_database()
        query: Dict[str, Any] = {"user_id": user_id}
        if since is not None:
            query["created_at"] = {"$gte": since}
        if platform:
            query["platform"] = platform

        posts = await db.content_posts.find(query).sort("created_at", -1).to_list(length=None)
        post_ids = [str(post["_id"]) for post in posts]
        by_post = defaultdict(list)
        if post_ids:
            async for metric in db.post_metrics.find({"post_id": {"$in": post_ids}}):
                metric.pop("_id", None)
                by_post[metric["post_id"]].append(metric)
        for post in posts:
            post["post_metrics"] = by_post.get(str(post["_id"]), [])
        return posts

    async def _read_through(self, key: str, ttl: Optional[float], label: str, compute) -> Dict[str, Any]:
        hit, cached = self.cache.lookup(key)
        if hit:
            return {"success": True, "data": cached, "fromCache": True}
        try:
            data = await compute()
        except Exception as e:
            logger.error(f"Error caching {label}: {e}")
            return {"success": False, "error": str(e)}
        self.cache.set(key, data, ttl)
        return {"success": True, "data": data, "fromCache": False}

    async def cache_analytics_overview(self, user_id: str, ttl: Optional[float] = None) -> Dict[str, Any]:
        key = TTLCache.generate_key("analytics_overview", user_id)

        async def compute():
            now = utcnow()
            since = now - timedelta(days=OVERVIEW_WINDOW_DAYS)
            posts = await self._posts_with_metrics(user_id, since=since)

            totals = {"views": 0, "likes": 0, "shares": 0, "comments": 0}
            platform_stats: Dict[str, Dict[str, int]] = {}
            for post in posts:
                stats = platform_stats.setdefault(post.get("platform"), {"posts": 0, "views": 0, "engagement": 0})
                stats["posts"] += 1
                for metric in post["post_metrics"]:
                    for field in totals:
                        totals[field] += metric.get(field) or 0
                    stats["views"] += metric.get("views") or 0
                    stats["engagement"] += _engagement(metric)

            engaged = totals["likes"] + totals["shares"] + totals["comments"]
            return {
                "totalPosts": len(posts),
                "totalViews": totals["views"],
                "totalLikes": totals["likes"],
                "totalShares": totals["shares"],
                "totalComments": totals["comments"],
                "engagementRate": _rate(engaged, totals["views"]),
                "platformStats": platform_stats,
                "dateRange": {"from": since.isoformat(), "to": now.isoformat()},
            }

        return await self._read_through(key, ttl, "analytics overview", compute)

    async def cache_analytics_metrics(
        self, user_id: str, platform: Optional[str] = None, days: int = 30, ttl: Optional[float] = None
    ) -> Dict[str, Any]:
        key = TTLCache.generate_key("analytics_metrics", user_id, platform or "all", days)

        async def compute():
            now = utcnow()
            since = now - timedelta(days=int(days))
            posts = await self._posts_with_metrics(user_id, since=since, platform=platform)

            daily: Dict[str, Dict[str, Any]] = {}
            platforms: Dict[str, Dict[str, Any]] = {}
            for post in posts:
                date = post["created_at"].date().isoformat()
                day = daily.setdefault(date, {"date": date, "posts": 0, "views": 0, "likes": 0, "shares": 0, "comments": 0})
                name = post.get("platform")
                plat = platforms.setdefault(name, {
                    "platform": name,
                    "posts": 0,
                    "totalViews": 0,
                    "totalLikes": 0,
                    "totalShares": 0,
                    "totalComments": 0,
                    "avgEngagement": 0,
                })
                day["posts"] += 1
                plat["posts"] += 1
                for metric in post["post_metrics"]:
                    for field in ("views", "likes", "shares", "comments"):
                        value = metric.get(field) or 0
                        day[field] += value
                        plat[f"total{field.capitalize()}"] += value

            for plat in platforms.values():
                engaged = plat["totalLikes"] + plat["totalShares"] + plat["totalComments"]
                plat["avgEngagement"] = _rate(engaged, plat["totalViews"])

            return {
                "dailyMetrics": sorted(daily.values(), key=lambda d: d["date"]),
                "platformMetrics": list(platforms.values()),
                "totalPosts": len(posts),
                "dateRange": {"from": since.isoformat(), "to": now.isoformat(), "days": int(days)},
            }

        return await self._read_through(key, ttl, "analytics metrics", compute)

    async def cache_top_posts(
        self, user_id: str, limit: int = 10, platform: Optional[str] = None, ttl: Optional[float] = None
    ) -> Dict[str, Any]:
        key = TTLCache.generate_key("top_posts", user_id, limit, platform or "all")

        async def compute():
            posts = await self._posts_with_metrics(user_id, platform=platform)
            scored = []
            for post in posts:
                metrics = post.pop("post_metrics")
                metric = metrics[0] if metrics else {}
                engaged = _engagement(metric)
                views = metric.get("views") or 0
                scored.append({
                    **_serialize_post(post),
                    "metrics": metric,
                    # weighted: engagement counts fully, views at a tenth
                    "performanceScore": engaged + views * 0.1,
                    "engagementRate": _rate(engaged, views),
                })
            scored.sort(key=lambda p: p["performanceScore"], reverse=True)
            return scored[: int(limit)]

        return await self._read_through(key, ttl, "top posts", compute)

    def invalidate_user_cache(self, user_id: str) -> int:
        """Drop every cached aggregate for ``user_id``."""
        removed = 0
        for prefix in CACHE_PREFIXES:
            removed += self.cache.clear_pattern(rf"^{prefix}:{re.escape(user_id)}(:|$)")
        logger.info(f"Invalidated cache for user: {user_id} ({removed} entries)")
        return removed

    async def preload_user_data(self, user_id: str) -> bool:
        """Warm the three aggregates with the longer preload TTL."""
        ttl = settings.CACHE_PRELOAD_TTL_SECONDS
        logger.info(f"Preloading data for user: {user_id}")
        results = await asyncio.gather(
            self.cache_analytics_overview(user_id, ttl=ttl),
            self.cache_analytics_metrics(user_id, None, 30, ttl=ttl),
            self.cache_top_posts(user_id, 10, None, ttl=ttl),
        )
        ok = all(result["success"] for result in results)
        if ok:
            logger.info(f"Successfully preloaded data for user: {user_id}")
        else:
            logger.error(f"Failed to preload some data for user {user_id}")
        return ok
