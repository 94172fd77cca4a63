# /cartresq/services/campaign_service.py

import calendar
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional
from pydantic import BaseModel, ValidationError

from cartresq.models.campaign import (
    RUNNABLE_CAMPAIGN_STATUSES, AudienceType, Campaign, CampaignSchedule, CampaignStatus, Frequency
)
from cartresq.services.cart_repository import normalize_email
from cartresq.services.db_service import now_utc
from cartresq.utils.errors import CampaignNotFoundError
from cartresq.utils.metrics import campaign_recipients_counter

# On-demand half of recovery: campaign scheduling, recipient resolution and the
# pause / resume / send-now / update flows. Recipients are always resolved when a
# campaign fires, never when it is created.

logger = logging.getLogger(__name__)


class CampaignTarget(BaseModel):
    email: str
    cart_id: Optional[str] = None


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_occurrence(schedule: CampaignSchedule, after: datetime) -> Optional[datetime]:
    """
    The fire time following `after`: +1 day/week/month, moved to timeOfDay (UTC).
    None for one-off campaigns or when the result lies past endDate.
    """
    if schedule.frequency == Frequency.DAILY:
        candidate = after + timedelta(days=1)
    elif schedule.frequency == Frequency.WEEKLY:
        candidate = after + timedelta(weeks=1)
    elif schedule.frequency == Frequency.MONTHLY:
        candidate = _add_months(after, 1)
    else:
        return None

    clock = schedule.clock_time
    if clock is not None:
        candidate = candidate.replace(hour=clock.hour, minute=clock.minute, second=0, microsecond=0)
    if schedule.end_date is not None and candidate > schedule.end_date:
        return None
    return candidate


def upcoming_occurrence(schedule: CampaignSchedule, now: datetime) -> Optional[datetime]:
    """First fire time strictly after `now`, walking forward from the start date."""
    candidate: Optional[datetime] = schedule.first_run_at()
    while candidate is not None and candidate <= now:
        candidate = next_occurrence(schedule, candidate)
    return candidate


class CampaignService:
    def __init__(
        self,
        campaigns,
        carts,
        email_scheduler,
        stagger_every: int = 10,
        stagger_minutes: int = 5,
        send_now_spacing_seconds: int = 2,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.campaigns = campaigns
        self.carts = carts
        self.email_scheduler = email_scheduler
        self.stagger_every = stagger_every
        self.stagger_minutes = stagger_minutes
        self.send_now_spacing_seconds = send_now_spacing_seconds
        self.clock = clock

    async def _load(self, campaign_id: str) -> Campaign:
        campaign = await self.campaigns.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    # --- Recipient resolution ---

    async def resolve_recipients(self, campaign: Campaign) -> List[CampaignTarget]:
        audience = campaign.target_audience
        if audience is None:
            logger.warning(f"Campaign {campaign.id} has no target audience; nobody will receive it")
            return []

        if audience.type == AudienceType.ABANDONED_CARTS:
            if not audience.allowlist:
                # An empty allowlist never means "everyone"
                logger.warning(f"Campaign {campaign.id} targets abandoned carts with no customers selected")
                return []
            carts = await self.carts.find_by_audience_filter(
                campaign.platform,
                audience.filters.min_cart_value,
                audience.filters.max_cart_value,
                audience.allowlist,
            )
            # Newest cart wins when a customer has several
            carts.sort(key=lambda c: c.last_activity.timestamp() if c.last_activity else 0, reverse=True)
            targets, seen = [], set()
            for cart in carts:
                email = normalize_email(cart.customer_email)
                if not email or email in seen:
                    continue
                seen.add(email)
                targets.append(CampaignTarget(email=cart.customer_email.strip(), cart_id=cart.cart_id))
            return targets

        if audience.type == AudienceType.SPECIFIC_CUSTOMERS:
            targets, seen = [], set()
            for raw in audience.allowlist:
                email = normalize_email(raw)
                if not email or email in seen:
                    continue
                seen.add(email)
                cart = await self.carts.find_latest_for_email(email, campaign.platform)
                targets.append(CampaignTarget(email=raw.strip(), cart_id=cart.cart_id if cart else None))
            return targets

        logger.warning(
            f"Campaign {campaign.id} audience type '{audience.type.value}' is not resolvable here; "
            "no recipients will be scheduled"
        )
        return []

    async def _enqueue(
        self, campaign: Campaign, targets: Iterable[CampaignTarget], run_id: str,
        delay_for: Callable[[int], timedelta], trigger: str,
    ) -> int:
        now = self.clock()
        count = 0
        for index, target in enumerate(targets):
            await self.email_scheduler.schedule_campaign_email(
                campaign.id, target.email, target.cart_id, campaign.platform,
                now + delay_for(index), run_id=run_id
            )
            count += 1
        campaign_recipients_counter.labels(trigger=trigger).inc(count)
        logger.info(f"Campaign {campaign.id}: {count} email(s) enqueued ({trigger}, run {run_id})")
        return count

    def _staggered(self, index: int) -> timedelta:
        return timedelta(minutes=(index // self.stagger_every) * self.stagger_minutes)

    def _spaced(self, index: int) -> timedelta:
        return timedelta(seconds=index * self.send_now_spacing_seconds)

    async def _start_run(self, campaign: Campaign) -> str:
        run_id = uuid.uuid4().hex
        await self.campaigns.set_run_id(campaign.id, run_id)
        campaign.current_run_id = run_id
        return run_id

    # --- Operations ---

    async def create_with_schedule(self, campaign: Campaign) -> Optional[str]:
        """Arms one process-scheduled-campaign job at startDate + timeOfDay."""
        if campaign.schedule is None:
            return None
        run_at = campaign.schedule.first_run_at()
        job_id = await self.email_scheduler.schedule_campaign_processing(campaign.id, run_at)
        if campaign.status == CampaignStatus.DRAFT:
            await self.campaigns.update_status(campaign.id, CampaignStatus.SCHEDULED)
            campaign.status = CampaignStatus.SCHEDULED
        return job_id

    async def process_scheduled_campaign(self, campaign_id: str, fired_at: Optional[datetime] = None) -> int:
        try:
            campaign = await self.campaigns.get(campaign_id)
        except ValidationError as e:
            logger.error(f"Campaign {campaign_id} document is malformed, skipping: {e}")
            return 0
        if campaign is None:
            logger.info(f"Campaign {campaign_id} no longer exists; nothing to process")
            return 0
        if campaign.status not in RUNNABLE_CAMPAIGN_STATUSES:
            logger.info(f"Campaign {campaign_id} is {campaign.status.value}; skipping scheduled run")
            return 0

        run_id = await self._start_run(campaign)
        targets = await self.resolve_recipients(campaign)
        count = await self._enqueue(campaign, targets, run_id, self._staggered, trigger="scheduled")

        if campaign.is_recurring:
            await self.schedule_next_occurrence(campaign, fired_at or self.clock())
        return count

    async def schedule_next_occurrence(self, campaign: Campaign, after: datetime) -> Optional[str]:
        """
        Arms the first occurrence following `after` that is still in the future.
        Occurrences missed while the worker was down are skipped, not replayed.
        """
        now = self.clock()
        next_run = next_occurrence(campaign.schedule, after)
        skipped = 0
        while next_run is not None and next_run <= now:
            skipped += 1
            next_run = next_occurrence(campaign.schedule, next_run)
        if skipped:
            logger.warning(f"Recurring campaign {campaign.id}: skipped {skipped} missed occurrence(s)")
        if next_run is None:
            logger.info(f"Recurring campaign {campaign.id} has reached its end date")
            return None
        return await self.email_scheduler.schedule_campaign_processing(campaign.id, next_run)

    async def pause(self, campaign_id: str) -> int:
        await self._load(campaign_id)
        await self.campaigns.update_status(campaign_id, CampaignStatus.PAUSED)
        removed = await self.email_scheduler.cancel_campaign_jobs(campaign_id)
        logger.info(f"Campaign {campaign_id} paused; {removed} pending job(s) removed")
        return removed

    async def resume(self, campaign_id: str) -> int:
        """
        Back to scheduled. Before the start time this only re-arms the scheduled run;
        afterwards recipients are re-resolved now, skipping anyone already sent to in
        the current run. Returns the number of emails enqueued.
        """
        campaign = await self._load(campaign_id)
        await self.campaigns.update_status(campaign_id, CampaignStatus.SCHEDULED)
        campaign.status = CampaignStatus.SCHEDULED
        now = self.clock()

        if campaign.schedule is not None and campaign.schedule.first_run_at() > now:
            await self.email_scheduler.schedule_campaign_processing(campaign.id, campaign.schedule.first_run_at())
            return 0

        run_id = campaign.current_run_id or await self._start_run(campaign)
        already_sent = campaign.emails_sent_in_run(run_id)
        targets = [
            t for t in await self.resolve_recipients(campaign)
            if normalize_email(t.email) not in already_sent
        ]
        count = await self._enqueue(campaign, targets, run_id, self._staggered, trigger="resume")

        if campaign.is_recurring:
            upcoming = upcoming_occurrence(campaign.schedule, now)
            if upcoming is not None:
                await self.email_scheduler.schedule_campaign_processing(campaign.id, upcoming)
        return count

    async def send_now(self, campaign_id: str) -> int:
        campaign = await self._load(campaign_id)
        run_id = await self._start_run(campaign)
        targets = await self.resolve_recipients(campaign)
        count = await self._enqueue(campaign, targets, run_id, self._spaced, trigger="send_now")
        await self.campaigns.update_status(campaign_id, CampaignStatus.SENT, {"sentAt": self.clock()})
        return count

    async def cancel(self, campaign_id: str) -> int:
        await self._load(campaign_id)
        await self.campaigns.update_status(campaign_id, CampaignStatus.CANCELLED)
        return await self.email_scheduler.cancel_campaign_jobs(campaign_id)

    async def update_campaign(self, campaign_id: str, changes: Dict[str, Any]) -> Campaign:
        """
        Applies dashboard edits (stored camelCase field names). A cancelled or paused campaign loses its pending jobs;
        a changed start date or time of day re-arms the scheduled run.
        Raises ValueError for an abandoned-cart campaign without selected customers.
        """
        current = await self._load(campaign_id)
        document = current.to_document()
        document.update({k: v for k, v in changes.items() if k not in ("_id", "id", "createdBy")})
        document["_id"] = current.id
        updated = Campaign.model_validate(document)

        audience = updated.target_audience
        if audience is not None and audience.type == AudienceType.ABANDONED_CARTS and not audience.allowlist:
            raise ValueError("At least one customer must be selected for abandoned cart campaigns")

        schedule_changed = updated.schedule is not None and (
            current.schedule is None
            or current.schedule.first_run_at() != updated.schedule.first_run_at()
        )

        await self.campaigns.save(updated)

        if updated.status in (CampaignStatus.CANCELLED, CampaignStatus.PAUSED):
            if updated.status != current.status:
                removed = await self.email_scheduler.cancel_campaign_jobs(campaign_id)
                logger.info(f"Campaign {campaign_id} {updated.status.value}; {removed} pending job(s) removed")
        elif schedule_changed:
            removed = await self.email_scheduler.cancel_campaign_jobs(campaign_id)
            logger.info(f"Rescheduling campaign {campaign_id} ({removed} old job(s) removed)")
            if updated.status in RUNNABLE_CAMPAIGN_STATUSES or updated.status == CampaignStatus.DRAFT:
                await self.create_with_schedule(updated)
        return updated
