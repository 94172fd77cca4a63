# /cartresq/services/db_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from cartresq.config.settings import Settings

logger = logging.getLogger(__name__)

# Collection names shared with the dashboard application
CARTS_COLLECTION = "abandonedcarts"
CAMPAIGNS_COLLECTION = "campaigns"
EMAILS_COLLECTION = "emails"
NOTIFICATIONS_COLLECTION = "notifications"


def _funnel_index(marker: str) -> IndexModel:
    return IndexModel([("status", ASCENDING), ("email_status", ASCENDING), (marker, ASCENDING)])


COLLECTION_INDEXES: Dict[str, List[IndexModel]] = {
    CARTS_COLLECTION: [
        IndexModel([("platform", ASCENDING), ("cart_id", ASCENDING)], unique=True),
        _funnel_index("last_activity"),
        _funnel_index("first_reminder_sent_at"),
        _funnel_index("second_reminder_sent_at"),
        _funnel_index("final_reminder_sent_at"),
        IndexModel([("platform", ASCENDING), ("status", ASCENDING), ("total", ASCENDING)]),
        IndexModel([("customer_email", ASCENDING)]),
    ],
    CAMPAIGNS_COLLECTION: [
        IndexModel([("status", ASCENDING), ("schedule.startDate", ASCENDING)]),
    ],
    EMAILS_COLLECTION: [
        IndexModel([("platform", ASCENDING), ("createdAt", DESCENDING)]),
        IndexModel([("to", ASCENDING)]),
        IndexModel([("campaign_id", ASCENDING)]),
        IndexModel([("cart_id", ASCENDING)]),
    ],
    NOTIFICATIONS_COLLECTION: [
        IndexModel([("data.cartId", ASCENDING), ("type", ASCENDING), ("createdAt", DESCENDING)]),
    ],
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_object_id(value: str) -> Any:
    """Campaign/cart ids arrive as hex strings; fall back to the raw value for legacy string ids."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


class DatabaseService:
    """
    Owns the MongoDB client and the indexes the scheduling core depends on.
    Repositories receive `self.db` and never create their own clients.
    """

    def __init__(self, settings: Settings):
        # tz_aware so run_at/last_activity compare against now_utc() without conversion
        self.client = AsyncIOMotorClient(
            settings.mongo_uri,
            tz_aware=True,
            tls=settings.mongo_ssl,
            maxPoolSize=settings.max_pool_size,
            minPoolSize=settings.min_pool_size,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
        )
        self.db = self.client.get_default_database()
        logger.info(f"MongoDB client ready for database '{self.db.name}'.")

    async def create_indexes(self) -> None:
        """Ensure funnel scan and audience indexes. A failing collection is logged and skipped."""
        for collection, models in COLLECTION_INDEXES.items():
            try:
                names = await self.db[collection].create_indexes(models)
                logger.debug(f"Indexes on {collection}: {', '.join(names)}")
            except PyMongoError as e:
                logger.error(f"Could not create indexes on {collection}: {e}")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False
        return True

    def close(self) -> None:
        self.client.close()
