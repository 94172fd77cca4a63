# /cartresq/services/notification_guard.py

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from cartresq.models.cart import AbandonedCart, CartStatus
from cartresq.services.db_service import NOTIFICATIONS_COLLECTION, now_utc

# One "cart abandoned" notification per cart per window. The funnel calls
# AbandonmentNotifier.notify() when a cart enters its first stage; the cart ingest
# path calls should_notify() directly before fanning the event out.

logger = logging.getLogger(__name__)


class CartNotificationGuard:
    def __init__(self, redis_client=None, dedupe_hours: int = 24):
        self.redis = redis_client
        self.window = timedelta(hours=dedupe_hours)

    @staticmethod
    def key_for(cart: AbandonedCart) -> str:
        return f"cart_abandoned_notified:{cart.platform}:{cart.cart_id}"

    async def should_notify(self, cart: AbandonedCart, previous: Optional[AbandonedCart], now: datetime) -> bool:
        if cart.status != CartStatus.ABANDONED.value:
            return False

        # Same abandonment seen again (webhook retries, cart re-syncs)
        if (
            previous is not None
            and previous.status == CartStatus.ABANDONED.value
            and previous.last_activity is not None
            and now - previous.last_activity < self.window
        ):
            logger.debug(f"Skipping duplicate abandonment notification for {cart.platform}:{cart.cart_id}")
            return False

        if not self.redis:
            return True
        try:
            # set with nx=True returns True only for the first caller in the window
            claimed = await self.redis.set(
                self.key_for(cart), "1", ex=int(self.window.total_seconds()), nx=True
            )
        except RedisError as e:
            logger.warning(f"Notification de-dupe unavailable, using snapshot rule only: {e}")
            return True
        return bool(claimed)


class AbandonmentNotifier:
    """
    Writes the dashboard's "Abandoned Cart" notification for a cart the funnel
    has just picked up, at most once per cart per guard window.
    """

    TYPE = "cart_abandoned"

    def __init__(self, guard: CartNotificationGuard, db, clock: Callable[[], datetime] = now_utc):
        self.guard = guard
        self.collection = db[NOTIFICATIONS_COLLECTION]
        self.clock = clock

    @staticmethod
    def build_document(cart: AbandonedCart, now: datetime) -> Dict[str, Any]:
        name = cart.customer_name or cart.customer_email or "A customer"
        return {
            "platform": cart.platform,
            "type": AbandonmentNotifier.TYPE,
            "title": "Abandoned Cart",
            "message": f"{name} abandoned a cart worth {cart.total:.2f}",
            "data": {
                "cartId": cart.cart_id,
                "customerName": cart.customer_name,
                "customerEmail": cart.customer_email,
                "total": cart.total,
                "itemCount": len(cart.items),
            },
            "read": False,
            "deleted": False,
            "createdAt": now,
            "updatedAt": now,
        }

    async def notify(self, cart: AbandonedCart, previous: Optional[AbandonedCart] = None) -> bool:
        now = self.clock()
        if not await self.guard.should_notify(cart, previous, now):
            return False
        try:
            existing = await self.collection.find_one({
                "data.cartId": cart.cart_id,
                "platform": cart.platform,
                "type": self.TYPE,
                "createdAt": {"$gte": now - self.guard.window},
            })
            if existing is not None:
                return False
            await self.collection.insert_one(self.build_document(cart, now))
        except PyMongoError as e:
            logger.error(f"Could not store abandonment notification for cart {cart.cart_id}: {e}")
            return False
        return True
