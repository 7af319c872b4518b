from app.db.mongo import get_database
from app.schemas.content import Brand, ContentPost, CreateBrand, CreatePost, MediaJob
from app.utils.dates import utcnow
from bson import ObjectId
from bson.errors import InvalidId
from typing import List

import logging

logger = logging.getLogger(__name__)


class ContentService:
    """Posts, brands and media jobs owned by a user."""

    async def create_post(self, user_id: str, data: CreatePost) -> ContentPost:
        db = await get_database()
        post = {
            "user_id": user_id,
            "platform": data.platform,
            "content": data.content,
            "brand_id": data.brand_id,
            "status": "scheduled" if data.scheduled_at else "draft",
            "scheduled_at": data.scheduled_at,
            "created_at": utcnow(),
        }
        result = await db.content_posts.insert_one(post)
        post["_id"] = str(result.inserted_id)
        logger.info(f"Created post {post['_id']} for user {user_id}")
        return ContentPost(**post)

    async def list_posts(self, user_id: str, limit: int = 50) -> List[ContentPost]:
        db = await get_database()
        cursor = db.content_posts.find({"user_id": user_id}).sort("created_at", -1).limit(limit)
        posts = []
        async for doc in cursor:
            doc["_id"] = str(doc["_id"])
            posts.append(ContentPost(**doc))
        return posts

    async def create_brand(self, user_id: str, data: CreateBrand) -> Brand:
        db = await get_database()
        brand = {
            "user_id": user_id,
            "name": data.name,
            "industry": data.industry,
            "description": data.description,
            "is_active": True,
            "created_at": utcnow(),
        }
        result = await db.brands.insert_one(brand)
        brand["_id"] = str(result.inserted_id)
        logger.info(f"Created brand {brand['_id']} for user {user_id}")
        return Brand(**brand)

    async def list_brands(self, user_id: str) -> List[Brand]:
        db = await get_database()
        brands = []
        async for doc in db.brands.find({"user_id": user_id, "is_active": True}).sort("created_at", 1):
            doc["_id"] = str(doc["_id"])
            brands.append(Brand(**doc))
        return brands

    async def deactivate_brand(self, brand_id: str, user_id: str) -> bool:
        """Soft-delete a brand; it stops counting against the brand limit at once."""
        try:
            key = ObjectId(brand_id)
        except InvalidId:
            return False
        db = await get_database()
        result = await db.brands.update_one(
            {"_id": key, "user_id": user_id, "is_active": True},
            {"$set": {"is_active": False, "deactivated_at": utcnow()}},
        )
        if result.modified_count == 0:
            logger.warning(f"Brand {brand_id} not found or already inactive for user {user_id}")
            return False
        logger.info(f"Deactivated brand {brand_id} for user {user_id}")
        return True

    async def create_media_job(self, user_id: str, kind: str, prompt: str, units: int, watermark: bool) -> MediaJob:
        db = await get_database()
        job = {
            "user_id": user_id,
            "kind": kind,
            "prompt": prompt,
            "units": units,
            "watermark": watermark,
            "status": "queued",
            "created_at": utcnow(),
        }
        result = await db.media_jobs.insert_one(job)
        job["_id"] = str(result.inserted_id)
        logger.info(f"Queued {kind} job {job['_id']} for user {user_id}")
        return MediaJob(**job)


content_service = ContentService()
