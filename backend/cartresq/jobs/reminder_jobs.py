# /cartresq/jobs/reminder_jobs.py

"""
Executors for the cart-level jobs: funnel reminders, manual reminders and
discount offers.

Each executor re-reads the cart when the job runs, because the cart may have
converted (or already received this stage) between enqueue and execution.
Those cases are logged and the job finishes normally. Only delivery failures
propagate, so the scheduler records them on the job.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from cartresq.models.cart import (
    AbandonedCart, EmailStatus, FunnelStage, can_transition, require_transition, stage_already_sent
)
from cartresq.models.email_log import EmailLogType, SentEmail
from cartresq.models.job import DiscountOfferPayload, Job, ReminderPayload, ReminderType
from cartresq.services.db_service import as_object_id, now_utc
from cartresq.services.email_renderer import RenderedEmail, build_unsubscribe_link, render
from cartresq.utils.errors import InvalidTransitionError
from cartresq.utils.logging import mask_email

logger = logging.getLogger(__name__)


class ReminderJobs:
    def __init__(
        self, carts, dispatcher, default_store_url: str = "",
        clock: Callable[[], datetime] = now_utc, email_log=None,
    ):
        self.carts = carts
        self.dispatcher = dispatcher
        self.default_store_url = default_store_url
        self.clock = clock
        self.email_log = email_log

    async def _record_sent(
        self, cart: AbandonedCart, rendered: RenderedEmail, message_id: Optional[str], metadata: Dict[str, Any]
    ) -> Optional[str]:
        if self.email_log is None:
            return None
        return await self.email_log.record(SentEmail(
            platform=cart.platform,
            to=cart.customer_email,
            subject=rendered.subject,
            html=rendered.html,
            message_id=message_id,
            sent_at=self.clock(),
            cart_id=as_object_id(cart.id) if cart.id else None,
            metadata={**metadata, "cartTotal": cart.total, "cartId": cart.cart_id},
        ))

    async def send_reminder(self, payload: ReminderPayload, job: Job) -> None:
        cart = await self.carts.find_one(payload.cart_id, payload.platform)
        if cart is None or not cart.customer_email:
            logger.info(f"Cart not found or no email: {payload.platform}:{payload.cart_id}")
            return
        if cart.is_terminal:
            logger.info(f"Cart {cart.cart_id} is {cart.status}, skipping {payload.reminder_type.value} reminder")
            return

        stage = None
        if payload.reminder_type != ReminderType.MANUAL:
            stage = FunnelStage(payload.reminder_type.value)
            if stage_already_sent(cart.email_status, stage):
                logger.info(f"Cart {cart.cart_id} already received the {stage.value} reminder, skipping")
                return
            try:
                require_transition(cart.email_status, stage.sent_marker)
            except InvalidTransitionError as e:
                logger.warning(f"Not sending {stage.value} reminder for cart {cart.cart_id}: {e}")
                return

        store_url = payload.store_url or cart.resolved_store_url or self.default_store_url
        now = self.clock()
        rendered = render(payload.reminder_type.value, cart, store_url, timestamp_ms=int(now.timestamp() * 1000))
        result = await self.dispatcher.dispatch(
            cart.customer_email, rendered.subject, rendered.html, payload,
            kind=f"reminder_{payload.reminder_type.value}",
            unsubscribe_url=build_unsubscribe_link(store_url, cart.customer_email),
        )
        if not result.sent:
            return

        email_id = await self._record_sent(cart, rendered, result.message_id, {
            "type": EmailLogType.ABANDONED_CART_REMINDER.value,
            "reminderType": payload.reminder_type.value,
            "storeUrl": store_url,
        })
        if stage is None:
            await self.carts.record_manual_reminder(cart.cart_id, cart.platform, self.clock(), email_id=email_id)
        else:
            await self.carts.update_stage_marker(cart.cart_id, cart.platform, stage, self.clock(), email_id=email_id)
        logger.info(f"{payload.reminder_type.value.capitalize()} reminder sent to {mask_email(cart.customer_email)}")

    async def send_discount_offer(self, payload: DiscountOfferPayload, job: Job) -> None:
        cart = await self.carts.find_one(payload.cart_id, payload.platform)
        if cart is None or not cart.customer_email:
            logger.info(f"Cart not found or no email: {payload.platform}:{payload.cart_id}")
            return
        if cart.is_terminal:
            logger.info(f"Cart {cart.cart_id} is {cart.status}, skipping discount offer")
            return
        if cart.discount_offer_sent or stage_already_sent(cart.email_status, FunnelStage.DISCOUNT):
            logger.info(f"Cart {cart.cart_id} already received a discount offer, skipping")
            return

        store_url = payload.store_url or cart.resolved_store_url or self.default_store_url
        now = self.clock()
        rendered = render(
            "discount-offer", cart, store_url,
            coupon_code=payload.coupon_code,
            coupon_amount=payload.coupon_amount,
            coupon_type=payload.coupon_type,
            timestamp_ms=int(now.timestamp() * 1000),
        )
        result = await self.dispatcher.dispatch(
            cart.customer_email, rendered.subject, rendered.html, payload,
            kind="discount_offer",
            unsubscribe_url=build_unsubscribe_link(store_url, cart.customer_email),
        )
        if not result.sent:
            return

        await self._record_sent(cart, rendered, result.message_id, {
            "type": EmailLogType.DISCOUNT_OFFER.value,
            "couponCode": payload.coupon_code,
            "couponAmount": payload.coupon_amount,
            "couponType": payload.coupon_type,
            "storeUrl": store_url,
        })
        if can_transition(cart.email_status, EmailStatus.DISCOUNT_OFFER_SENT):
            await self.carts.update_stage_marker(cart.cart_id, cart.platform, FunnelStage.DISCOUNT, self.clock())
        else:
            await self.carts.record_discount_offer(cart.cart_id, cart.platform, payload.coupon_code, self.clock())
        logger.info(f"Discount offer {payload.coupon_code} sent to {mask_email(cart.customer_email)}")
