# /cartresq/config/settings.py

import sys
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/cartresq"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False
    jobs_collection: str = "email_jobs"

    # Scheduler engine
    scheduler_poll_interval_seconds: float = 5.0
    scheduler_max_concurrency: int = 5
    scheduler_lock_lifetime_seconds: int = 600
    scheduler_shutdown_timeout_seconds: float = 120.0

    # Reminder funnel
    funnel_batch_size: int = 50
    funnel_timezone: str = "UTC"
    cart_retention_days: int = 7
    discount_default_percent: float = 10
    notification_dedupe_hours: int = 24

    # Campaigns
    campaign_stagger_every: int = 10
    campaign_stagger_minutes: int = 5
    send_now_spacing_seconds: int = 2

    # Dispatcher limits (Zoho recommended values)
    max_emails_per_minute: int = 10
    max_emails_per_hour: int = 100
    min_seconds_between_emails: float = 6.0
    rate_limit_requeue_seconds: int = 60
    provider_block_backoff_seconds: int = 300
    rate_limit_backoff_base_seconds: int = 60
    provider_max_retries: int = 3

    # SMTP
    smtp_host: str = "smtp.zoho.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 30.0
    mail_from_email: Optional[str] = None
    mail_from_name: str = "CartResQ"

    # Stores
    default_store_url: str = ""

    # Redis
    redis_url: Optional[str] = "redis://localhost:6379"

    # Observability
    alerting_webhook_url: Optional[str] = None
    log_level: str = "INFO"
    environment: str = Field(default="development")

    # ---------------- Validators ---------------- #

    @field_validator("scheduler_poll_interval_seconds")
    @classmethod
    def poll_interval_must_be_short(cls, v):
        # "send now" jobs rely on the poller picking them up quickly
        if v <= 0 or v >= 10:
            raise ValueError("SCHEDULER_POLL_INTERVAL_SECONDS must be between 0 and 10 seconds")
        return v

    @field_validator("scheduler_max_concurrency")
    @classmethod
    def concurrency_must_be_bounded(cls, v):
        if v < 1 or v > 20:
            raise ValueError("SCHEDULER_MAX_CONCURRENCY must be between 1 and 20")
        return v

    @field_validator("default_store_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if v else v

    @property
    def sender_address(self) -> Optional[str]:
        return self.mail_from_email or self.smtp_username

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.max_emails_per_minute > settings_obj.max_emails_per_hour:
            raise ValueError("MAX_EMAILS_PER_MINUTE cannot exceed MAX_EMAILS_PER_HOUR")

        if settings_obj.environment == "production":
            for var in ["smtp_username", "smtp_password", "mongo_uri"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
