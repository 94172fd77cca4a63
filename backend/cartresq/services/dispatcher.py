# /cartresq/services/dispatcher.py

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from pydantic import BaseModel

from cartresq.services.db_service import now_utc
from cartresq.services.email_renderer import html_to_text
from cartresq.utils.errors import FatalDeliveryError, ProviderBlockedError, RateLimitedError
from cartresq.utils.logging import mask_email
from cartresq.utils.metrics import emails_dispatched_counter, rate_limit_deferrals_counter

# Wraps every outbound send with throttling and provider backoff. Deferred sends
# are re-submitted to the job scheduler as a fresh job of the same kind, never
# retried with in-process timers.

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    status: str  # "sent" | "queued"
    message_id: Optional[str] = None
    retry_at: Optional[datetime] = None
    retry_job_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == "sent"


class RateLimitedDispatcher:
    def __init__(
        self,
        mailer,
        limiter,
        scheduler,
        sender_address: Optional[str],
        requeue_seconds: int = 60,
        block_backoff_seconds: int = 300,
        rate_limit_backoff_base_seconds: int = 60,
        max_retries: int = 3,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.mailer = mailer
        self.limiter = limiter
        self.scheduler = scheduler
        self.sender_address = sender_address
        self.requeue_seconds = requeue_seconds
        self.block_backoff_seconds = block_backoff_seconds
        self.rate_limit_backoff_base_seconds = rate_limit_backoff_base_seconds
        self.max_retries = max_retries
        self.clock = clock

    def compliance_headers(self, unsubscribe_url: Optional[str] = None) -> Dict[str, str]:
        targets = []
        if unsubscribe_url:
            targets.append(f"<{unsubscribe_url}>")
        if self.sender_address:
            targets.append(f"<mailto:{self.sender_address}?subject=unsubscribe>")
        headers = {
            "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            "X-Auto-Response-Suppress": "OOF, AutoReply",
            "Precedence": "bulk",
            "X-Mailer": "CartResQ Email System",
        }
        if targets:
            headers["List-Unsubscribe"] = ", ".join(targets)
        return headers

    async def dispatch(
        self, to: str, subject: str, html: str, retry_payload, kind: str,
        unsubscribe_url: Optional[str] = None,
    ) -> DispatchResult:
        """
        Sends now, or re-queues `retry_payload` and returns a "queued" result.
        Raises FatalDeliveryError once the provider retry budget is spent.
        """
        denied = await self.limiter.acquire()
        if denied:
            retry_at = self.clock() + timedelta(seconds=self.requeue_seconds)
            # Throttling is our own doing: the retry budget is not consumed.
            job_id = await self.scheduler.schedule(retry_at, retry_payload)
            rate_limit_deferrals_counter.labels(reason=f"limit_{denied}").inc()
            emails_dispatched_counter.labels(kind=kind, result="queued").inc()
            logger.info(f"Per-{denied} send limit reached; {kind} email to {mask_email(to)} re-queued for {retry_at.isoformat()}")
            return DispatchResult(status="queued", retry_at=retry_at, retry_job_id=job_id, reason=f"limit_{denied}")

        try:
            message_id = await self.mailer.send(
                to, subject, html,
                headers=self.compliance_headers(unsubscribe_url),
                text=html_to_text(html),
            )
        except ProviderBlockedError as e:
            return await self._retry_or_fail(
                to, retry_payload, kind, e, self.block_backoff_seconds, "provider_blocked"
            )
        except RateLimitedError as e:
            delay = self.rate_limit_backoff_base_seconds * (2 ** retry_payload.attempt)
            return await self._retry_or_fail(to, retry_payload, kind, e, delay, "provider_rate_limited")
        except FatalDeliveryError:
            emails_dispatched_counter.labels(kind=kind, result="failed").inc()
            raise

        emails_dispatched_counter.labels(kind=kind, result="sent").inc()
        return DispatchResult(status="sent", message_id=message_id)

    async def _retry_or_fail(self, to, payload, kind, error, delay_seconds, reason) -> DispatchResult:
        if payload.attempt >= self.max_retries:
            emails_dispatched_counter.labels(kind=kind, result="failed").inc()
            raise FatalDeliveryError(
                f"{kind} email to {mask_email(to)} gave up after {payload.attempt} retries: {error}. "
                "Check the sending account with the mail provider before re-running."
            ) from error

        retry_at = self.clock() + timedelta(seconds=delay_seconds)
        next_payload = payload.model_copy(update={"attempt": payload.attempt + 1})
        job_id = await self.scheduler.schedule(retry_at, next_payload)
        rate_limit_deferrals_counter.labels(reason=reason).inc()
        emails_dispatched_counter.labels(kind=kind, result="queued").inc()
        logger.warning(
            f"{reason} while sending {kind} email to {mask_email(to)} ({error}); "
            f"retry {next_payload.attempt}/{self.max_retries} at {retry_at.isoformat()}"
        )
        return DispatchResult(status="queued", retry_at=retry_at, retry_job_id=job_id, reason=reason)
