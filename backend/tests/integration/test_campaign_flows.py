# backend/tests/integration/test_campaign_flows.py

from datetime import datetime, timedelta, timezone

import pytest

from cartresq.jobs.campaign_jobs import CampaignJobs
from cartresq.models.campaign import Campaign, CampaignRecipient, CampaignStatus
from cartresq.models.job import JobName
from cartresq.services.campaign_service import CampaignService

CAMPAIGN_EMAIL = "send-campaign-email"
PROCESS_CAMPAIGN = "process-scheduled-campaign"
EMAILS = ["a@example.com", "b@example.com", "c@example.com", "d@example.com", "e@example.com"]


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def service(campaigns, carts, email_scheduler, clock):
    return CampaignService(campaigns, carts, email_scheduler, clock=clock)


@pytest.fixture
def worker(scheduler, campaigns, carts, service, dispatcher, clock):
    jobs = CampaignJobs(campaigns, carts, service, dispatcher, "https://shop.example.com", clock=clock)
    scheduler.register(JobName.SEND_CAMPAIGN_EMAIL, jobs.send_campaign_email)
    scheduler.register(JobName.PROCESS_SCHEDULED_CAMPAIGN, jobs.process_scheduled_campaign)
    return scheduler


@pytest.fixture
def audience(carts, clock):
    for i, email in enumerate(EMAILS):
        carts.add(f"c-{i}", customer_email=email, total=20, last_activity=clock.now - timedelta(hours=i + 1))
    return {"type": "abandoned_carts", "filters": {"customerEmails": list(EMAILS)}}


def schedule_doc(start="2024-06-01T00:00:00Z", time_of_day="12:00", frequency="once", end=None):
    doc = {"startDate": start, "timeOfDay": time_of_day, "frequency": frequency}
    if end:
        doc["endDate"] = end
    return doc


async def run_due(scheduler):
    while await scheduler.run_pending():
        await scheduler.drain()


def pending(job_store, name):
    return sorted(job_store.jobs_named(name), key=lambda job: job.run_at)


@pytest.mark.asyncio
async def test_create_arms_processing_job_and_leaves_draft(service, campaigns, job_store):
    campaign = campaigns.add(status="draft", schedule=schedule_doc(start="2024-06-05T00:00:00Z", time_of_day="09:30"))

    await service.create_with_schedule(campaign)

    jobs = pending(job_store, PROCESS_CAMPAIGN)
    assert [j.run_at for j in jobs] == [utc(2024, 6, 5, 9, 30)]
    assert campaigns.campaigns["camp-1"].status == CampaignStatus.SCHEDULED
    # Recipients are resolved at fire time only
    assert pending(job_store, CAMPAIGN_EMAIL) == []


@pytest.mark.asyncio
async def test_daily_campaign_sends_and_rearms(service, worker, campaigns, audience, job_store, mailer, clock):
    """Firing at startDate + timeOfDay sends to every recipient and arms the next day."""
    campaign = campaigns.add(
        target_audience=audience, schedule=schedule_doc(frequency="daily", end="2024-06-10T23:59:00Z"),
        content={"subject": "Still thinking, {customer_name}?", "body": "Your cart: {cart_items}"},
    )
    await service.create_with_schedule(campaign)

    await run_due(worker)

    assert sorted(m["to"] for m in mailer.sent) == EMAILS
    stored = campaigns.campaigns["camp-1"]
    assert len(stored.recipients) == 5
    assert {r.run_id for r in stored.recipients} == {stored.current_run_id}
    assert [j.run_at for j in pending(job_store, PROCESS_CAMPAIGN)] == [utc(2024, 6, 2, 12, 0)]



@pytest.mark.asyncio
async def test_overdue_recurring_campaign_fires_once_and_rearms_in_future(
    service, worker, campaigns, audience, job_store, mailer
):
    """A worker that was down for a week sends one run, not one per missed day."""
    campaign = campaigns.add(
        target_audience=audience, schedule=schedule_doc(start="2024-05-25T00:00:00Z", frequency="daily"),
    )
    await service.create_with_schedule(campaign)
    assert [j.run_at for j in pending(job_store, PROCESS_CAMPAIGN)] == [utc(2024, 5, 25, 12, 0)]

    await run_due(worker)

    assert sorted(m["to"] for m in mailer.sent) == EMAILS
    assert [j.run_at for j in pending(job_store, PROCESS_CAMPAIGN)] == [utc(2024, 6, 2, 12, 0)]


@pytest.mark.asyncio
async def test_overdue_occurrences_past_end_date_stop_recurrence(service, campaigns, audience, job_store):
    campaigns.add(target_audience=audience,
                  schedule=schedule_doc(start="2024-05-20T00:00:00Z", frequency="weekly", end="2024-06-01T00:00:00Z"))

    await service.process_scheduled_campaign("camp-1", fired_at=utc(2024, 5, 20, 12, 0))

    assert pending(job_store, PROCESS_CAMPAIGN) == []

@pytest.mark.asyncio
async def test_recurrence_stops_after_end_date(service, campaigns, audience, job_store):
    campaigns.add(target_audience=audience, schedule=schedule_doc(frequency="daily", end="2024-06-10T23:59:00Z"))

    await service.process_scheduled_campaign("camp-1", fired_at=utc(2024, 6, 10, 12, 0))

    assert pending(job_store, PROCESS_CAMPAIGN) == []
    assert len(pending(job_store, CAMPAIGN_EMAIL)) == 5


@pytest.mark.asyncio
async def test_large_audience_is_staggered(service, campaigns, carts, job_store, clock):
    emails = [f"user{i}@example.com" for i in range(25)]
    for i, email in enumerate(emails):
        carts.add(f"big-{i}", customer_email=email, last_activity=clock.now - timedelta(minutes=i))
    campaigns.add(target_audience={"type": "specific_customers", "customerEmails": emails},
                  schedule=schedule_doc())

    assert await service.process_scheduled_campaign("camp-1") == 25

    offsets = [j.run_at - clock.now for j in pending(job_store, CAMPAIGN_EMAIL)]
    assert offsets.count(timedelta(0)) == 10
    assert offsets.count(timedelta(minutes=5)) == 10
    assert offsets.count(timedelta(minutes=10)) == 5


@pytest.mark.asyncio
async def test_pause_then_resume_skips_already_sent(service, campaigns, audience, job_store):
    campaigns.add(target_audience=audience, schedule=schedule_doc())
    await service.process_scheduled_campaign("camp-1")
    assert len(pending(job_store, CAMPAIGN_EMAIL)) == 5

    assert await service.pause("camp-1") == 5
    assert pending(job_store, CAMPAIGN_EMAIL) == []
    assert campaigns.campaigns["camp-1"].status == CampaignStatus.PAUSED

    run_id = campaigns.campaigns["camp-1"].current_run_id
    for email in EMAILS[:2]:
        await campaigns.append_recipient("camp-1", CampaignRecipient(email=email, run_id=run_id))

    assert await service.resume("camp-1") == 3
    assert sorted(j.payload.recipient_email for j in pending(job_store, CAMPAIGN_EMAIL)) == EMAILS[2:]
    assert {j.payload.run_id for j in pending(job_store, CAMPAIGN_EMAIL)} == {run_id}
    assert campaigns.campaigns["camp-1"].status == CampaignStatus.SCHEDULED



@pytest.mark.asyncio
async def test_resume_targets_carts_still_eligible(service, campaigns, carts, audience, job_store):
    """Carts that converted while the campaign was paused are not re-enqueued."""
    campaigns.add(target_audience=audience, schedule=schedule_doc())
    await service.process_scheduled_campaign("camp-1")
    assert await service.pause("camp-1") == 5

    carts.raw("c-0")["status"] = "converted"
    carts.raw("c-3")["status"] = "converted"

    assert await service.resume("camp-1") == 3
    recipients = sorted(j.payload.recipient_email for j in pending(job_store, CAMPAIGN_EMAIL))
    assert recipients == [EMAILS[1], EMAILS[2], EMAILS[4]]

@pytest.mark.asyncio
async def test_resume_before_start_only_rearms(service, campaigns, audience, job_store):
    campaigns.add(status="paused", target_audience=audience,
                  schedule=schedule_doc(start="2024-06-03T00:00:00Z", time_of_day="08:00"))

    assert await service.resume("camp-1") == 0

    assert [j.run_at for j in pending(job_store, PROCESS_CAMPAIGN)] == [utc(2024, 6, 3, 8, 0)]
    assert pending(job_store, CAMPAIGN_EMAIL) == []


@pytest.mark.asyncio
async def test_pause_is_idempotent(service, campaigns, audience):
    campaigns.add(target_audience=audience, schedule=schedule_doc())
    await service.process_scheduled_campaign("camp-1")

    assert await service.pause("camp-1") == 5
    assert await service.pause("camp-1") == 0


@pytest.mark.asyncio
async def test_send_now_spaces_sends_and_marks_sent(service, worker, campaigns, audience, job_store, mailer, clock):
    campaigns.add(status="draft", target_audience=audience)

    assert await service.send_now("camp-1") == 5

    offsets = [j.run_at - clock.now for j in pending(job_store, CAMPAIGN_EMAIL)]
    assert offsets == [timedelta(seconds=2 * i) for i in range(5)]
    stored = campaigns.campaigns["camp-1"]
    assert stored.status == CampaignStatus.SENT
    assert stored.sent_at == clock.now

    clock.advance(seconds=10)
    await run_due(worker)
    assert len(mailer.sent) == 5


@pytest.mark.asyncio
async def test_paused_campaign_email_is_not_sent(service, worker, campaigns, audience, job_store, mailer):
    campaigns.add(target_audience=audience, schedule=schedule_doc())
    await service.process_scheduled_campaign("camp-1")
    campaigns.campaigns["camp-1"].status = CampaignStatus.PAUSED

    await run_due(worker)

    assert mailer.sent == []
    assert pending(job_store, CAMPAIGN_EMAIL) == []


@pytest.mark.asyncio
async def test_duplicate_job_in_same_run_sends_once(worker, email_scheduler, campaigns, carts, mailer, clock):
    worker.max_concurrency = 1
    carts.add("c-1", customer_email="a@example.com")
    campaigns.add(target_audience={"type": "specific_customers", "customerEmails": ["a@example.com"]})
    for _ in range(2):
        await email_scheduler.schedule_campaign_email("camp-1", "a@example.com", "c-1", "woocommerce",
                                                      clock.now, run_id="run-1")

    await run_due(worker)

    assert len(mailer.sent) == 1
    assert len(campaigns.campaigns["camp-1"].recipients) == 1


@pytest.mark.asyncio
async def test_converted_cart_is_skipped(worker, email_scheduler, campaigns, carts, mailer, clock):
    carts.add("c-1", customer_email="a@example.com", status="converted")
    campaigns.add(target_audience={"type": "specific_customers", "customerEmails": ["a@example.com"]})
    await email_scheduler.schedule_campaign_email("camp-1", "a@example.com", "c-1", "woocommerce", clock.now)

    await run_due(worker)

    assert mailer.sent == []


@pytest.mark.asyncio
async def test_malformed_campaign_is_skipped(service, campaigns, job_store):
    async def broken(_campaign_id):
        return Campaign.model_validate({"status": "not-a-status"})

    campaigns.get = broken

    assert await service.process_scheduled_campaign("camp-1") == 0
    assert job_store.docs == {}


@pytest.mark.asyncio
async def test_update_with_new_schedule_rearms(service, campaigns, audience, job_store):
    campaign = campaigns.add(target_audience=audience, schedule=schedule_doc(start="2024-06-05T00:00:00Z"))
    await service.create_with_schedule(campaign)

    await service.update_campaign("camp-1", {"schedule": schedule_doc(start="2024-06-07T00:00:00Z", time_of_day="18:15")})

    assert [j.run_at for j in pending(job_store, PROCESS_CAMPAIGN)] == [utc(2024, 6, 7, 18, 15)]


@pytest.mark.asyncio
async def test_update_to_cancelled_drops_pending_jobs(service, campaigns, audience, job_store):
    campaigns.add(target_audience=audience, schedule=schedule_doc())
    await service.process_scheduled_campaign("camp-1")

    updated = await service.update_campaign("camp-1", {"status": "cancelled"})

    assert updated.status == CampaignStatus.CANCELLED
    assert pending(job_store, CAMPAIGN_EMAIL) == []


@pytest.mark.asyncio
async def test_update_rejects_abandoned_cart_campaign_without_customers(service, campaigns, audience):
    campaigns.add(target_audience=audience)

    with pytest.raises(ValueError):
        await service.update_campaign("camp-1", {"targetAudience": {"type": "abandoned_carts"}})


@pytest.mark.asyncio
async def test_campaign_send_is_logged(scheduler, campaigns, carts, service, dispatcher, email_scheduler,
                                       email_log, clock):
    jobs = CampaignJobs(campaigns, carts, service, dispatcher, "https://shop.example.com",
                        clock=clock, email_log=email_log)
    scheduler.register(JobName.SEND_CAMPAIGN_EMAIL, jobs.send_campaign_email)
    carts.add("c-1", customer_email="a@example.com")
    campaigns.add(name="June promo", target_audience={"type": "specific_customers", "customerEmails": ["a@example.com"]})
    await email_scheduler.schedule_campaign_email("camp-1", "a@example.com", "c-1", "woocommerce",
                                                  clock.now, run_id="run-1")

    await run_due(scheduler)

    [record] = email_log.of_type("campaign")
    assert record.to == "a@example.com"
    assert record.campaign_id == "camp-1"
    assert record.metadata["campaignName"] == "June promo"
    assert record.metadata["runId"] == "run-1"
    assert record.metadata["cartId"] == "c-1"
