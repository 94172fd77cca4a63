# /cartresq/services/funnel_service.py

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from cartresq.models.cart import AbandonedCart, FunnelStage, is_foreign_marker
from cartresq.models.job import ReminderType
from cartresq.services.db_service import now_utc
from cartresq.utils.logging import mask_email
from cartresq.utils.metrics import funnel_scheduled_counter

# Cron-driven half of cart recovery: each stage scan looks for carts whose
# previous step happened inside a bounded window and moves them one stage on.

logger = logging.getLogger(__name__)

# (how far back the window opens, how far back it closes)
STAGE_WINDOWS: Dict[FunnelStage, Tuple[timedelta, timedelta]] = {
    FunnelStage.FIRST: (timedelta(hours=2), timedelta(hours=1)),
    FunnelStage.SECOND: (timedelta(hours=24), timedelta(hours=20)),
    FunnelStage.FINAL: (timedelta(hours=24), timedelta(hours=20)),
    FunnelStage.DISCOUNT: (timedelta(hours=24), timedelta(hours=20)),
}

# APScheduler cron fields per stage scan
STAGE_CRON: Dict[FunnelStage, dict] = {
    FunnelStage.FIRST: {"minute": "*/15"},
    FunnelStage.SECOND: {"hour": "*/2", "minute": 0},
    FunnelStage.FINAL: {"hour": "*/4", "minute": 0},
    FunnelStage.DISCOUNT: {"hour": "*/6", "minute": 0},
}

CLEANUP_JOB_ID = "funnel-cleanup-old-carts"
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_discount_code(prefix: str = "SAVE", length: int = 6) -> str:
    return prefix + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def stage_job_id(stage: FunnelStage) -> str:
    return f"funnel-{stage.value}-scan"


class ReminderFunnel:
    def __init__(
        self,
        carts,
        email_scheduler,
        batch_size: int = 50,
        default_store_url: str = "",
        discount_percent: float = 10,
        retention_days: int = 7,
        clock: Callable[[], datetime] = now_utc,
        notifier=None,
    ):
        self.carts = carts
        self.email_scheduler = email_scheduler
        self.batch_size = batch_size
        self.default_store_url = default_store_url
        self.discount_percent = discount_percent
        self.retention_days = retention_days
        self.clock = clock
        self.notifier = notifier
        self.cron_scheduler = None

    def register(self, cron_scheduler) -> None:
        """Adds the stage scans and the retention purge to an APScheduler instance."""
        self.cron_scheduler = cron_scheduler
        for stage, trigger in STAGE_CRON.items():
            cron_scheduler.add_job(
                self._run_scheduled_scan,
                'cron',
                args=[stage],
                id=stage_job_id(stage),
                replace_existing=True,
                **trigger
            )
            logger.info(f"Scheduled funnel scan: {stage.value} ({trigger}).")

        cron_scheduler.add_job(
            self._run_scheduled_cleanup,
            'cron',
            hour=2,
            minute=0,
            id=CLEANUP_JOB_ID,
            replace_existing=True
        )
        logger.info("Scheduled job: cleanup_old_carts (daily at 2 AM).")

    async def _run_scheduled_scan(self, stage: FunnelStage):
        try:
            await self.scan_stage(stage)
        except Exception as e:
            logger.error(f"Funnel scan '{stage.value}' failed: {e}", exc_info=True)

    async def _run_scheduled_cleanup(self):
        try:
            await self.cleanup_old_carts()
        except Exception as e:
            logger.error(f"Cart cleanup failed: {e}", exc_info=True)

    async def scan_stage(self, stage: FunnelStage) -> int:
        """One eligibility pass for `stage`. Returns the number of carts moved to *_scheduled."""
        now = self.clock()
        opens, closes = STAGE_WINDOWS[stage]
        carts = await self.carts.find_eligible_for_stage(stage, now - opens, now - closes, self.batch_size)
        logger.info(f"Funnel scan '{stage.value}': {len(carts)} candidate cart(s)")

        scheduled = 0
        for cart in carts:
            try:
                if await self._enqueue_stage(cart, stage, now):
                    scheduled += 1
            except Exception as e:
                logger.error(
                    f"Error scheduling {stage.value} stage for cart {cart.platform}:{cart.cart_id}: {e}",
                    exc_info=True
                )
        logger.info(f"Funnel scan '{stage.value}' complete: {scheduled} cart(s) scheduled")
        return scheduled

    async def _enqueue_stage(self, cart: AbandonedCart, stage: FunnelStage, now: datetime) -> bool:
        """
        Claim-before-enqueue: the *_scheduled marker is written first with a
        conditional update, so a concurrent or repeated scan cannot enqueue the
        same stage twice. The claim is rolled back if the job cannot be persisted.
        """
        coupon_code: Optional[str] = None
        extra = None
        if stage is FunnelStage.DISCOUNT:
            coupon_code = generate_discount_code()
            extra = {"discount_code": coupon_code}

        if not await self.carts.claim_stage(cart, stage, now, extra):
            logger.debug(f"Cart {cart.platform}:{cart.cart_id} already claimed for {stage.value}")
            return False
        if is_foreign_marker(cart.email_status):
            logger.info(
                f"Cart {cart.platform}:{cart.cart_id} had email_status '{cart.email_status}' "
                f"set outside the funnel; starting it at {stage.value}"
            )

        store_url = cart.resolved_store_url or self.default_store_url
        try:
            if stage is FunnelStage.DISCOUNT:
                await self.email_scheduler.schedule_discount_offer(
                    cart.cart_id, cart.platform, store_url, coupon_code,
                    self.discount_percent, "percentage", delay_hours=0
                )
            else:
                await self.email_scheduler.schedule_reminder(
                    cart.cart_id, cart.platform, store_url, delay_hours=0, stage=ReminderType(stage.value)
                )
        except Exception:
            await self.carts.release_stage(cart, stage, cart.email_status)
            raise

        funnel_scheduled_counter.labels(stage=stage.value).inc()
        logger.info(f"Scheduled {stage.value} stage for {mask_email(cart.customer_email)} (cart {cart.cart_id})")
        if stage is FunnelStage.FIRST and self.notifier is not None:
            await self.notifier.notify(cart)
        return True

    async def cleanup_old_carts(self) -> int:
        cutoff = self.clock() - timedelta(days=self.retention_days)
        deleted = await self.carts.purge_stale(cutoff)
        logger.info(f"Cleaned up {deleted} abandoned cart(s) inactive since {cutoff.isoformat()}")
        return deleted

    async def trigger_stage(self, stage) -> int:
        """Runs a stage scan on demand (operator action)."""
        stage = FunnelStage(stage)
        logger.info(f"Manually triggering funnel scan '{stage.value}'")
        return await self.scan_stage(stage)

    def status(self) -> List[dict]:
        if self.cron_scheduler is None:
            return []
        return [
            {"id": job.id, "next_run_time": getattr(job, "next_run_time", None)}
            for job in self.cron_scheduler.get_jobs()
        ]
