# backend/tests/conftest.py
import copy
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from cartresq.models.campaign import Campaign, CampaignRecipient, CampaignStatus
from cartresq.models.cart import AbandonedCart, CartStatus, FunnelStage, can_transition
from cartresq.models.job import Job, QueueStatus
from cartresq.services.cart_repository import STAGE_WINDOW_FIELD, normalize_email
from cartresq.services.dispatcher import RateLimitedDispatcher
from cartresq.services.email_scheduler import EmailScheduler
from cartresq.services.scheduler_service import JobScheduler
from cartresq.utils.rate_limiter import SendRateLimiter

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock shared by every service under test."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


class InMemoryJobStore:
    """Same contract as MongoJobStore, backed by a dict."""

    def __init__(self):
        self.docs = {}
        self._ids = itertools.count(1)

    @staticmethod
    def _pending(doc):
        return doc["last_finished_at"] is None and doc["failed_at"] is None

    @staticmethod
    def _unlocked(doc, now):
        return doc["lock_expires_at"] is None or doc["lock_expires_at"] <= now

    @staticmethod
    def _matches(doc, data_filter, any_of=False):
        checks = [doc["data"].get(k) == v for k, v in data_filter.items()]
        return any(checks) if any_of else all(checks)

    def _job(self, job_id):
        return Job(id=job_id, **{k: v for k, v in self.docs[job_id].items()})

    async def insert(self, name, data, run_at, now):
        job_id = f"job-{next(self._ids)}"
        self.docs[job_id] = {
            "name": name, "data": copy.deepcopy(data), "run_at": run_at, "created_at": now,
            "lock_owner": None, "locked_at": None, "lock_expires_at": None,
            "last_run_at": None, "last_finished_at": None,
            "failed_at": None, "fail_reason": None, "fail_count": 0,
        }
        return job_id

    async def claim_due(self, now, owner, lock_lifetime):
        due = [
            (doc["run_at"], job_id) for job_id, doc in self.docs.items()
            if doc["run_at"] is not None and doc["run_at"] <= now
            and self._pending(doc) and self._unlocked(doc, now)
        ]
        if not due:
            return None
        _, job_id = min(due)
        self.docs[job_id].update(lock_owner=owner, locked_at=now, lock_expires_at=now + lock_lifetime)
        return self._job(job_id)

    async def complete(self, job_id, now):
        self.docs[job_id].update(
            last_run_at=now, last_finished_at=now, lock_owner=None, locked_at=None, lock_expires_at=None
        )

    async def fail(self, job_id, now, reason):
        doc = self.docs[job_id]
        doc.update(last_run_at=now, failed_at=now, fail_reason=reason,
                   lock_owner=None, locked_at=None, lock_expires_at=None)
        doc["fail_count"] += 1

    async def get(self, job_id):
        return self._job(job_id) if job_id in self.docs else None

    async def find(self, data_filter, include_finished=True):
        return [
            self._job(job_id) for job_id, doc in sorted(self.docs.items(), key=lambda kv: kv[1]["run_at"])
            if self._matches(doc, data_filter) and (include_finished or self._pending(doc))
        ]

    async def delete(self, job_id, now):
        doc = self.docs.get(job_id)
        if doc and self._pending(doc) and self._unlocked(doc, now):
            del self.docs[job_id]
            return True
        return False

    async def delete_pending(self, data_filter, now, any_of=False):
        if not data_filter:
            raise ValueError("Refusing to cancel jobs with an empty filter")
        doomed = [
            job_id for job_id, doc in self.docs.items()
            if self._matches(doc, data_filter, any_of) and self._pending(doc) and self._unlocked(doc, now)
        ]
        for job_id in doomed:
            del self.docs[job_id]
        return len(doomed)

    async def status_counts(self, now):
        pending = [d for d in self.docs.values() if self._pending(d)]
        running = [d for d in pending if d["lock_expires_at"] is not None and d["lock_expires_at"] > now]
        run_times = [d["run_at"] for d in pending if d["run_at"] is not None]
        return QueueStatus(
            total_jobs=len(self.docs),
            pending_jobs=len(pending) - len(running),
            running_jobs=len(running),
            failed_jobs=sum(1 for d in self.docs.values() if d["failed_at"] is not None),
            next_run_time=min(run_times) if run_times else None,
        )

    # Test helpers
    def jobs_named(self, name, pending_only=True):
        return [
            self._job(job_id) for job_id, doc in self.docs.items()
            if doc["name"] == name and (not pending_only or self._pending(doc))
        ]


class FakeCartRepository:
    """Dict-backed CartRepository with the same conditional-update semantics."""

    def __init__(self):
        self.docs = {}

    def add(self, cart_id, platform="woocommerce", **fields):
        doc = {
            "platform": platform, "cart_id": cart_id,
            "customer_email": f"{cart_id}@example.com",
            "status": CartStatus.ABANDONED.value, "items": [], "total": 0.0,
            "email_status": None, "reminder_attempts": 0,
        }
        doc.update(fields)
        self.docs[(platform, cart_id)] = doc
        return AbandonedCart.from_document(doc)

    def raw(self, cart_id, platform="woocommerce"):
        return self.docs[(platform, cart_id)]

    async def find_one(self, cart_id, platform):
        doc = self.docs.get((platform, cart_id))
        return AbandonedCart.from_document(doc) if doc else None

    async def find_eligible_for_stage(self, stage, window_start, window_end, limit):
        field = STAGE_WINDOW_FIELD[stage]
        found = []
        for doc in self.docs.values():
            stamp = doc.get(field)
            if (
                doc["status"] == CartStatus.ABANDONED.value
                and doc.get("customer_email")
                and can_transition(doc.get("email_status"), stage.scheduled_marker)
                and stamp is not None and window_start <= stamp <= window_end
                and not (stage is FunnelStage.DISCOUNT and doc.get("discount_offer_sent"))
            ):
                found.append(doc)
        found.sort(key=lambda d: d[field])
        return [AbandonedCart.from_document(d) for d in found[:limit]]

    async def claim_stage(self, cart, stage, now, extra_fields=None):
        doc = self.docs[(cart.platform, cart.cart_id)]
        if not can_transition(doc.get("email_status"), stage.scheduled_marker):
            return False
        doc["email_status"] = stage.scheduled_marker.value
        doc[stage.scheduled_at_field] = now
        doc.update(extra_fields or {})
        return True

    async def release_stage(self, cart, stage, previous_marker):
        doc = self.docs[(cart.platform, cart.cart_id)]
        if doc.get("email_status") == stage.scheduled_marker.value:
            doc["email_status"] = previous_marker
            doc.pop(stage.scheduled_at_field, None)

    async def update_stage_marker(self, cart_id, platform, stage, sent_at, email_id=None):
        doc = self.docs[(platform, cart_id)]
        if not can_transition(doc.get("email_status"), stage.sent_marker):
            return False
        doc["email_status"] = stage.sent_marker.value
        doc[stage.sent_at_field] = sent_at
        if stage is FunnelStage.DISCOUNT:
            doc["discount_offer_sent"] = True
        doc["reminder_attempts"] = doc.get("reminder_attempts", 0) + 1
        if email_id:
            doc["last_reminder_id"] = email_id
        return True

    async def record_manual_reminder(self, cart_id, platform, sent_at, email_id=None):
        doc = self.docs[(platform, cart_id)]
        doc["last_manual_reminder_at"] = sent_at
        doc["reminder_attempts"] = doc.get("reminder_attempts", 0) + 1
        if email_id:
            doc["last_reminder_id"] = email_id

    async def record_discount_offer(self, cart_id, platform, coupon_code, sent_at):
        self.docs[(platform, cart_id)].update(
            discount_offer_sent=True, discount_offer_sent_at=sent_at, discount_code=coupon_code
        )

    async def find_by_audience_filter(self, platform, min_total=None, max_total=None, allowlist=None):
        wanted = None
        if allowlist is not None:
            wanted = {normalize_email(e) for e in allowlist if normalize_email(e)}
            if not wanted:
                return []
        carts = []
        for doc in self.docs.values():
            if doc["platform"] != platform or doc["status"] not in ("active", "abandoned"):
                continue
            if min_total is not None and doc["total"] < min_total:
                continue
            if max_total is not None and doc["total"] > max_total:
                continue
            if wanted is not None and normalize_email(doc.get("customer_email")) not in wanted:
                continue
            carts.append(AbandonedCart.from_document(doc))
        return carts

    async def find_latest_for_email(self, email, platform):
        matches = [
            d for d in self.docs.values()
            if d["platform"] == platform and d["status"] == "abandoned"
            and normalize_email(d.get("customer_email")) == normalize_email(email)
        ]
        if not matches:
            return None
        matches.sort(key=lambda d: d.get("last_activity") or T0 - timedelta(days=3650), reverse=True)
        return AbandonedCart.from_document(matches[0])

    async def purge_stale(self, cutoff):
        doomed = [
            key for key, d in self.docs.items()
            if d["status"] == "abandoned" and d.get("last_activity") and d["last_activity"] < cutoff
        ]
        for key in doomed:
            del self.docs[key]
        return len(doomed)


class FakeCampaignRepository:
    def __init__(self):
        self.campaigns = {}

    def add(self, campaign_id="camp-1", **fields):
        doc = {"_id": campaign_id, "name": "Test campaign", "platform": "woocommerce", "status": "scheduled"}
        doc.update(fields)
        campaign = Campaign.from_document(doc)
        self.campaigns[campaign.id] = campaign
        return campaign

    async def get(self, campaign_id):
        campaign = self.campaigns.get(str(campaign_id))
        return campaign.model_copy(deep=True) if campaign else None

    async def save(self, campaign):
        stored = self.campaigns.get(campaign.id)
        updated = campaign.model_copy(deep=True)
        if stored is not None:
            updated.recipients = stored.recipients
        self.campaigns[campaign.id] = updated

    async def update_status(self, campaign_id, status, extra=None):
        campaign = self.campaigns[str(campaign_id)]
        campaign.status = CampaignStatus(status)
        if extra and "sentAt" in extra:
            campaign.sent_at = extra["sentAt"]

    async def set_run_id(self, campaign_id, run_id):
        self.campaigns[str(campaign_id)].current_run_id = run_id

    async def append_recipient(self, campaign_id, recipient: CampaignRecipient):
        self.campaigns[str(campaign_id)].recipients.append(recipient)


class FakeMailer:
    """Records sends. `failures` is consumed in order: an exception instance is raised, None sends."""

    def __init__(self, failures=None):
        self.sent = []
        self.failures = list(failures or [])

    async def send(self, to, subject, html, headers=None, text=None):
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append({"to": to, "subject": subject, "html": html, "headers": headers, "text": text})
        return f"<msg-{len(self.sent)}@example.com>"


class FakeEmailLog:
    """Collects SentEmail records the way EmailLogRepository stores them."""

    def __init__(self):
        self.records = []

    async def record(self, email):
        self.records.append(email)
        return f"email-{len(self.records)}"

    def of_type(self, kind):
        return [r for r in self.records if r.metadata.get("type") == kind]


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def scheduler(job_store, clock):
    return JobScheduler(job_store, poll_interval=0.05, max_concurrency=3,
                        lock_lifetime=timedelta(minutes=10), shutdown_timeout=5, clock=clock)


@pytest.fixture
def email_scheduler(scheduler, clock):
    return EmailScheduler(scheduler, clock=clock)


@pytest.fixture
def carts():
    return FakeCartRepository()


@pytest.fixture
def campaigns():
    return FakeCampaignRepository()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def email_log():
    return FakeEmailLog()


@pytest.fixture
def limiter():
    return SendRateLimiter(per_minute=100, per_hour=1000, min_interval_seconds=0, sleep=_no_sleep)


@pytest.fixture
def dispatcher(mailer, limiter, scheduler, clock):
    return RateLimitedDispatcher(mailer, limiter, scheduler, sender_address="shop@example.com", clock=clock)
