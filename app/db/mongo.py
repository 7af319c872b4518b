from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

class MongoDB:
    client: AsyncIOMotorClient = None
    db = None

    async def connect_to_database(self):
        logger.info("Connecting to MongoDB...")
        try:
            self.client = AsyncIOMotorClient(settings.MONGO_URI)
            self.db = self.client[settings.MONGO_DB_NAME]
            logger.info("Connected to MongoDB.")
        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            raise e

    async def close_database_connection(self):
        logger.info("Closing MongoDB connection...")
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed.")

mongodb = MongoDB()

async def get_database():
    return mongodb.db


async def ensure_indexes(db) -> None:
    """Create the unique keys the billing and metering writes rely on."""
    await db.subscriptions.create_index("stripe_subscription_id", unique=True)
    await db.subscriptions.create_index([("user_id", ASCENDING), ("updated_at", DESCENDING)])
    await db.usage_buckets.create_index(
        [("user_id", ASCENDING), ("period_start", ASCENDING)], unique=True
    )
    await db.addon_purchases.create_index("stripe_payment_id", unique=True, sparse=True)
    await db.user_profiles.create_index("user_id", unique=True)
    await db.user_profiles.create_index("email")
    await db.brands.create_index([("user_id", ASCENDING), ("is_active", ASCENDING)])
    await db.content_posts.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.post_metrics.create_index("post_id")
    logger.info("MongoDB indexes ensured.")
