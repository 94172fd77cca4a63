# /cartresq/jobs/campaign_jobs.py

"""
Executors for campaign jobs.

process-scheduled-campaign resolves recipients at fire time and fans out one
send-campaign-email job per recipient; send-campaign-email renders and sends a
single email and appends it to the campaign's recipient log.
"""

import logging
from datetime import datetime
from typing import Callable, Optional
from pydantic import ValidationError

from cartresq.models.campaign import Campaign, CampaignRecipient, CampaignStatus
from cartresq.models.cart import AbandonedCart
from cartresq.models.email_log import EmailLogType, SentEmail
from cartresq.models.job import CampaignEmailPayload, Job, ScheduledCampaignPayload
from cartresq.services.cart_repository import normalize_email
from cartresq.services.db_service import as_object_id, now_utc
from cartresq.services.email_renderer import build_unsubscribe_link, render
from cartresq.utils.logging import mask_email

logger = logging.getLogger(__name__)

STOPPED_CAMPAIGN_STATUSES = {CampaignStatus.PAUSED, CampaignStatus.CANCELLED}


class CampaignJobs:
    def __init__(
        self, campaigns, carts, campaign_service, dispatcher,
        default_store_url: str = "", clock: Callable[[], datetime] = now_utc, email_log=None,
    ):
        self.campaigns = campaigns
        self.carts = carts
        self.campaign_service = campaign_service
        self.dispatcher = dispatcher
        self.default_store_url = default_store_url
        self.clock = clock
        self.email_log = email_log

    async def process_scheduled_campaign(self, payload: ScheduledCampaignPayload, job: Job) -> None:
        await self.campaign_service.process_scheduled_campaign(payload.campaign_id, fired_at=job.run_at)

    def resolve_store_url(self, campaign: Campaign, cart: Optional[AbandonedCart]) -> str:
        if cart is not None and cart.resolved_store_url:
            return cart.resolved_store_url
        return campaign.store_url or campaign.store_id or self.default_store_url

    async def send_campaign_email(self, payload: CampaignEmailPayload, job: Job) -> None:
        try:
            campaign = await self.campaigns.get(payload.campaign_id)
        except ValidationError as e:
            logger.error(f"Campaign {payload.campaign_id} document is malformed, skipping send: {e}")
            return
        if campaign is None:
            logger.info(f"Campaign not found: {payload.campaign_id}")
            return
        if campaign.status in STOPPED_CAMPAIGN_STATUSES:
            logger.info(f"Campaign {campaign.id} is {campaign.status.value}; not sending to {mask_email(payload.recipient_email)}")
            return
        if normalize_email(payload.recipient_email) in campaign.emails_sent_in_run(payload.run_id):
            logger.info(f"Campaign {campaign.id} already sent to {mask_email(payload.recipient_email)} in this run")
            return

        cart = None
        if payload.cart_id:
            cart = await self.carts.find_one(payload.cart_id, payload.platform)
            if cart is not None and cart.is_terminal:
                logger.info(f"Cart {cart.cart_id} is {cart.status}; skipping campaign email")
                return

        store_url = self.resolve_store_url(campaign, cart)
        now = self.clock()
        rendered = render(
            "campaign", cart, store_url,
            content=campaign.content,
            recipient_email=payload.recipient_email,
            timestamp_ms=int(now.timestamp() * 1000),
        )
        result = await self.dispatcher.dispatch(
            payload.recipient_email, rendered.subject, rendered.html, payload,
            kind="campaign",
            unsubscribe_url=build_unsubscribe_link(store_url, payload.recipient_email),
        )
        if not result.sent:
            return

        await self.campaigns.append_recipient(
            campaign.id,
            CampaignRecipient(
                email=payload.recipient_email,
                cart_id=payload.cart_id,
                sent_at=self.clock(),
                message_id=result.message_id,
                run_id=payload.run_id,
            )
        )
        if self.email_log is not None:
            await self.email_log.record(SentEmail(
                platform=payload.platform,
                to=payload.recipient_email,
                subject=rendered.subject,
                html=rendered.html,
                message_id=result.message_id,
                sent_at=self.clock(),
                campaign_id=as_object_id(campaign.id),
                cart_id=as_object_id(cart.id) if cart is not None and cart.id else None,
                metadata={
                    "type": EmailLogType.CAMPAIGN.value,
                    "campaignName": campaign.name,
                    "runId": payload.run_id,
                    "storeUrl": store_url,
                    "cartId": payload.cart_id,
                },
            ))
        logger.info(f"Campaign {campaign.id} email sent to {mask_email(payload.recipient_email)}")
