# /cartresq/services/email_scheduler.py

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from cartresq.models.job import (
    CampaignEmailPayload, DiscountOfferPayload, QueueStatus, ReminderPayload,
    ReminderType, ScheduledCampaignPayload
)
from cartresq.services.db_service import now_utc
from cartresq.utils.logging import mask_email

# The scheduling surface the rest of the application talks to. Every call only
# persists a job; the work happens later on a worker.

logger = logging.getLogger(__name__)


class EmailScheduler:
    def __init__(self, scheduler, clock: Callable[[], datetime] = now_utc):
        self.scheduler = scheduler
        self.clock = clock

    async def schedule_reminder(
        self, cart_id: str, platform: str, store_url: str = "",
        delay_hours: float = 1, stage: ReminderType = ReminderType.FIRST,
    ) -> str:
        run_at = self.clock() + timedelta(hours=delay_hours)
        payload = ReminderPayload(
            cart_id=cart_id, platform=platform, store_url=store_url or "", reminder_type=ReminderType(stage)
        )
        job_id = await self.scheduler.schedule(run_at, payload)
        logger.info(f"Scheduled {payload.reminder_type.value} reminder for cart {platform}:{cart_id} at {run_at.isoformat()}")
        return job_id

    async def schedule_campaign_email(
        self, campaign_id: str, email: str, cart_id: Optional[str], platform: str,
        run_at: datetime, run_id: Optional[str] = None,
    ) -> str:
        payload = CampaignEmailPayload(
            campaign_id=str(campaign_id), recipient_email=email, cart_id=cart_id,
            platform=platform, run_id=run_id
        )
        job_id = await self.scheduler.schedule(run_at, payload)
        logger.debug(f"Scheduled campaign {campaign_id} email to {mask_email(email)} at {run_at.isoformat()}")
        return job_id

    async def schedule_campaign_processing(self, campaign_id: str, run_at: datetime) -> str:
        job_id = await self.scheduler.schedule(run_at, ScheduledCampaignPayload(campaign_id=str(campaign_id)))
        logger.info(f"Campaign {campaign_id} will be processed at {run_at.isoformat()}")
        return job_id

    async def schedule_discount_offer(
        self, cart_id: str, platform: str, store_url: str, code: str, amount: float,
        coupon_type: str = "percentage", delay_hours: float = 0,
    ) -> str:
        run_at = self.clock() + timedelta(hours=delay_hours)
        payload = DiscountOfferPayload(
            cart_id=cart_id, platform=platform, store_url=store_url or "",
            coupon_code=code, coupon_amount=amount, coupon_type=coupon_type
        )
        job_id = await self.scheduler.schedule(run_at, payload)
        logger.info(f"Scheduled discount offer {code} for cart {platform}:{cart_id} at {run_at.isoformat()}")
        return job_id

    async def cancel_jobs_for(self, entity_id: str) -> int:
        """Removes pending jobs that reference a cart id or a campaign id. Idempotent."""
        entity_id = str(entity_id)
        return await self.scheduler.cancel_matching(
            {"cart_id": entity_id, "campaign_id": entity_id}, any_of=True
        )

    async def cancel_campaign_jobs(self, campaign_id: str) -> int:
        return await self.scheduler.cancel_matching({"campaign_id": str(campaign_id)})

    async def queue_status(self) -> QueueStatus:
        return await self.scheduler.queue_status()
