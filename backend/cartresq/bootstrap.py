# /cartresq/bootstrap.py

import logging
from datetime import timedelta
import redis.asyncio as redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cartresq.config.settings import Settings
from cartresq.jobs.campaign_jobs import CampaignJobs
from cartresq.jobs.reminder_jobs import ReminderJobs
from cartresq.models.job import JobName
from cartresq.services.campaign_repository import CampaignRepository
from cartresq.services.campaign_service import CampaignService
from cartresq.services.cart_repository import CartRepository
from cartresq.services.db_service import DatabaseService
from cartresq.services.dispatcher import RateLimitedDispatcher
from cartresq.services.email_log_repository import EmailLogRepository
from cartresq.services.email_scheduler import EmailScheduler
from cartresq.services.funnel_service import ReminderFunnel
from cartresq.services.job_store import MongoJobStore
from cartresq.services.mailer import SmtpMailer
from cartresq.services.notification_guard import AbandonmentNotifier, CartNotificationGuard
from cartresq.services.scheduler_service import JobScheduler
from cartresq.utils.alerting import AlertingService
from cartresq.utils.rate_limiter import SendRateLimiter

# Builds every service exactly once per process and hands them around explicitly.
# Nothing in the package keeps a module-level service instance.

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(self, settings: Settings, **services):
        self.settings = settings
        self.database = services["database"]
        self.redis = services.get("redis")
        self.alerting = services["alerting"]
        self.job_store = services["job_store"]
        self.scheduler = services["scheduler"]
        self.cron_scheduler = services["cron_scheduler"]
        self.email_scheduler = services["email_scheduler"]
        self.carts = services["carts"]
        self.campaigns = services["campaigns"]
        self.mailer = services["mailer"]
        self.limiter = services["limiter"]
        self.dispatcher = services["dispatcher"]
        self.funnel = services["funnel"]
        self.campaign_service = services["campaign_service"]
        self.notification_guard = services["notification_guard"]
        self.notifier = services.get("notifier")
        self.email_log = services.get("email_log")
        self.reminder_jobs = services["reminder_jobs"]
        self.campaign_jobs = services["campaign_jobs"]

    def register_job_handlers(self) -> None:
        self.scheduler.register(JobName.SEND_ABANDONED_CART_REMINDER, self.reminder_jobs.send_reminder)
        self.scheduler.register(JobName.SEND_DISCOUNT_OFFER, self.reminder_jobs.send_discount_offer)
        self.scheduler.register(JobName.SEND_CAMPAIGN_EMAIL, self.campaign_jobs.send_campaign_email)
        self.scheduler.register(JobName.PROCESS_SCHEDULED_CAMPAIGN, self.campaign_jobs.process_scheduled_campaign)

    async def close(self) -> None:
        await self.alerting.cleanup()
        if self.redis is not None:
            await self.redis.aclose()
        self.database.close()


def _build_redis(settings: Settings):
    if not settings.redis_url:
        return None
    try:
        pool = redis.ConnectionPool.from_url(settings.redis_url, max_connections=10)
        return redis.Redis(connection_pool=pool)
    except Exception as e:
        logger.critical(f"Failed to configure Redis at {settings.redis_url}: {e}")
        return None


def build_services(settings: Settings) -> ServiceContainer:
    database = DatabaseService(settings)
    redis_client = _build_redis(settings)
    alerting = AlertingService(settings.alerting_webhook_url, environment=settings.environment)

    job_store = MongoJobStore(database.db, settings.jobs_collection)
    scheduler = JobScheduler(
        job_store,
        poll_interval=settings.scheduler_poll_interval_seconds,
        max_concurrency=settings.scheduler_max_concurrency,
        lock_lifetime=timedelta(seconds=settings.scheduler_lock_lifetime_seconds),
        shutdown_timeout=settings.scheduler_shutdown_timeout_seconds,
        alerting=alerting,
    )
    email_scheduler = EmailScheduler(scheduler)

    carts = CartRepository(database.db)
    campaigns = CampaignRepository(database.db)
    email_log = EmailLogRepository(database.db)
    notification_guard = CartNotificationGuard(redis_client, settings.notification_dedupe_hours)
    notifier = AbandonmentNotifier(notification_guard, database.db)

    mailer = SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_email=settings.sender_address,
        from_name=settings.mail_from_name,
        use_tls=settings.smtp_use_tls,
        timeout=settings.smtp_timeout_seconds,
    )
    limiter = SendRateLimiter(
        per_minute=settings.max_emails_per_minute,
        per_hour=settings.max_emails_per_hour,
        min_interval_seconds=settings.min_seconds_between_emails,
    )
    dispatcher = RateLimitedDispatcher(
        mailer,
        limiter,
        scheduler,
        sender_address=settings.sender_address,
        requeue_seconds=settings.rate_limit_requeue_seconds,
        block_backoff_seconds=settings.provider_block_backoff_seconds,
        rate_limit_backoff_base_seconds=settings.rate_limit_backoff_base_seconds,
        max_retries=settings.provider_max_retries,
    )

    funnel = ReminderFunnel(
        carts,
        email_scheduler,
        batch_size=settings.funnel_batch_size,
        default_store_url=settings.default_store_url,
        discount_percent=settings.discount_default_percent,
        retention_days=settings.cart_retention_days,
        notifier=notifier,
    )
    campaign_service = CampaignService(
        campaigns,
        carts,
        email_scheduler,
        stagger_every=settings.campaign_stagger_every,
        stagger_minutes=settings.campaign_stagger_minutes,
        send_now_spacing_seconds=settings.send_now_spacing_seconds,
    )

    return ServiceContainer(
        settings,
        database=database,
        redis=redis_client,
        alerting=alerting,
        job_store=job_store,
        scheduler=scheduler,
        cron_scheduler=AsyncIOScheduler(timezone=settings.funnel_timezone),
        email_scheduler=email_scheduler,
        carts=carts,
        campaigns=campaigns,
        mailer=mailer,
        limiter=limiter,
        dispatcher=dispatcher,
        funnel=funnel,
        campaign_service=campaign_service,
        notification_guard=notification_guard,
        notifier=notifier,
        email_log=email_log,
        reminder_jobs=ReminderJobs(carts, dispatcher, settings.default_store_url, email_log=email_log),
        campaign_jobs=CampaignJobs(
            campaigns, carts, campaign_service, dispatcher, settings.default_store_url, email_log=email_log
        ),
    )
