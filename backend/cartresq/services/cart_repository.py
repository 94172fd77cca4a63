# /cartresq/services/cart_repository.py

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional
from pymongo import ASCENDING, DESCENDING

from cartresq.models.cart import (
    AbandonedCart, CartStatus, FunnelStage, marker_condition
)
from cartresq.services.db_service import CARTS_COLLECTION, as_object_id
from cartresq.utils.logging import mask_email

logger = logging.getLogger(__name__)

# Field whose timestamp opens each stage's eligibility window.
STAGE_WINDOW_FIELD = {
    FunnelStage.FIRST: "last_activity",
    FunnelStage.SECOND: FunnelStage.FIRST.sent_at_field,
    FunnelStage.FINAL: FunnelStage.SECOND.sent_at_field,
    FunnelStage.DISCOUNT: FunnelStage.FINAL.sent_at_field,
}


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def email_pattern(email: str) -> re.Pattern:
    """Anchored, case-insensitive match that tolerates whitespace stored around the address."""
    return re.compile(rf"^\s*{re.escape(email.strip())}\s*$", re.IGNORECASE)


def _cart_key(platform: str, cart_id: str) -> dict:
    return {"platform": platform, "cart_id": cart_id}


class CartRepository:
    """
    Reads abandoned carts written by the store integrations and maintains the
    reminder funnel markers on them. Every write is a single-document update.
    """

    def __init__(self, db):
        self.collection = db[CARTS_COLLECTION]

    async def find_one(self, cart_id: str, platform: str) -> Optional[AbandonedCart]:
        document = await self.collection.find_one(_cart_key(platform, cart_id))
        return AbandonedCart.from_document(document) if document else None

    async def find_eligible_for_stage(
        self, stage: FunnelStage, window_start: datetime, window_end: datetime, limit: int
    ) -> List[AbandonedCart]:
        """
        Abandoned carts whose window timestamp lies in [window_start, window_end] and
        whose marker allows `stage` to be scheduled. A bounded window keeps old carts
        from being rescanned forever.
        """
        query = {
            "status": CartStatus.ABANDONED.value,
            "customer_email": {"$nin": [None, ""]},
            "email_status": marker_condition(stage.scheduled_marker),
            STAGE_WINDOW_FIELD[stage]: {"$gte": window_start, "$lte": window_end},
        }
        if stage is FunnelStage.DISCOUNT:
            query["discount_offer_sent"] = {"$ne": True}

        cursor = self.collection.find(query).sort(STAGE_WINDOW_FIELD[stage], ASCENDING).limit(limit)
        documents = await cursor.to_list(length=limit)
        return [AbandonedCart.from_document(doc) for doc in documents]

    async def claim_stage(
        self, cart: AbandonedCart, stage: FunnelStage, now: datetime, extra_fields: Optional[dict] = None
    ) -> bool:
        """
        Moves the cart to the stage's *_scheduled marker, but only from a marker the
        transition table allows. Returns False when another scan got there first.
        """
        update = {"email_status": stage.scheduled_marker.value, stage.scheduled_at_field: now}
        if extra_fields:
            update.update(extra_fields)
        result = await self.collection.update_one(
            {**_cart_key(cart.platform, cart.cart_id),
             "email_status": marker_condition(stage.scheduled_marker)},
            {"$set": update}
        )
        return result.modified_count == 1

    async def release_stage(self, cart: AbandonedCart, stage: FunnelStage, previous_marker: Optional[str]) -> None:
        """Rolls a claim back when the job could not be scheduled."""
        await self.collection.update_one(
            {**_cart_key(cart.platform, cart.cart_id), "email_status": stage.scheduled_marker.value},
            {"$set": {"email_status": previous_marker}, "$unset": {stage.scheduled_at_field: ""}}
        )

    async def update_stage_marker(
        self, cart_id: str, platform: str, stage: FunnelStage, sent_at: datetime, email_id: Optional[str] = None
    ) -> bool:
        """
        Records that the stage's email went out. Returns False (and writes nothing)
        when the current marker does not allow the transition.
        """
        update = {"email_status": stage.sent_marker.value, stage.sent_at_field: sent_at}
        if email_id:
            update["last_reminder_id"] = as_object_id(email_id)
        if stage is FunnelStage.DISCOUNT:
            update["discount_offer_sent"] = True
        result = await self.collection.update_one(
            {**_cart_key(platform, cart_id),
             "email_status": marker_condition(stage.sent_marker)},
            {"$set": update, "$inc": {"reminder_attempts": 1}}
        )
        if result.modified_count != 1:
            logger.warning(
                f"Rejected funnel transition to '{stage.sent_marker.value}' for cart {platform}:{cart_id}"
            )
            return False
        return True

    async def record_manual_reminder(
        self, cart_id: str, platform: str, sent_at: datetime, email_id: Optional[str] = None
    ) -> None:
        fields = {"last_manual_reminder_at": sent_at}
        if email_id:
            fields["last_reminder_id"] = as_object_id(email_id)
        await self.collection.update_one(
            _cart_key(platform, cart_id), {"$set": fields, "$inc": {"reminder_attempts": 1}}
        )

    async def record_discount_offer(self, cart_id: str, platform: str, coupon_code: str, sent_at: datetime) -> None:
        """Discount offers sent outside the funnel leave email_status untouched."""
        await self.collection.update_one(
            _cart_key(platform, cart_id),
            {"$set": {"discount_offer_sent": True, "discount_offer_sent_at": sent_at, "discount_code": coupon_code}}
        )

    async def find_by_audience_filter(
        self,
        platform: str,
        min_total: Optional[float] = None,
        max_total: Optional[float] = None,
        allowlist: Optional[Iterable[str]] = None,
    ) -> List[AbandonedCart]:
        """
        Active/abandoned carts on `platform` within the total bounds. When an allowlist
        is given only carts whose email is on it (case-insensitive, trimmed) are kept;
        an empty allowlist keeps nothing.
        """
        query = {
            "platform": platform,
            "status": {"$in": [CartStatus.ACTIVE.value, CartStatus.ABANDONED.value]},
        }
        total_range = {}
        if min_total is not None:
            total_range["$gte"] = float(min_total)
        if max_total is not None:
            total_range["$lte"] = float(max_total)
        if total_range:
            query["total"] = total_range

        if allowlist is not None:
            wanted = sorted({normalize_email(e) for e in allowlist if normalize_email(e)})
            if not wanted:
                return []
            query["customer_email"] = {"$in": [email_pattern(e) for e in wanted]}

        documents = await self.collection.find(query).to_list(length=None)
        return [AbandonedCart.from_document(doc) for doc in documents]

    async def find_latest_for_email(self, email: str, platform: str) -> Optional[AbandonedCart]:
        """Most recent abandoned cart for a customer on a platform."""
        document = await self.collection.find_one(
            {
                "platform": platform,
                "status": CartStatus.ABANDONED.value,
                "customer_email": email_pattern(email),
            },
            sort=[("last_activity", DESCENDING)]
        )
        if document is None:
            logger.debug(f"No abandoned cart on {platform} for {mask_email(email)}")
        return AbandonedCart.from_document(document) if document else None

    async def purge_stale(self, cutoff: datetime) -> int:
        """Deletes carts still abandoned (never converted) whose last activity predates `cutoff`."""
        result = await self.collection.delete_many(
            {"status": CartStatus.ABANDONED.value, "last_activity": {"$lt": cutoff}}
        )
        return result.deleted_count

