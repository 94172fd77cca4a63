# /cartresq/models/job.py

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

# Job payloads are a tagged union keyed on "kind", which is also the job name
# stored in the job store. One handler is registered per kind.


class JobName(str, Enum):
    SEND_ABANDONED_CART_REMINDER = "send-abandoned-cart-reminder"
    SEND_CAMPAIGN_EMAIL = "send-campaign-email"
    PROCESS_SCHEDULED_CAMPAIGN = "process-scheduled-campaign"
    SEND_DISCOUNT_OFFER = "send-discount-offer"


class ReminderType(str, Enum):
    FIRST = "first"
    SECOND = "second"
    FINAL = "final"
    MANUAL = "manual"


class ReminderPayload(BaseModel):
    kind: Literal["send-abandoned-cart-reminder"] = "send-abandoned-cart-reminder"
    cart_id: str
    platform: str
    store_url: str = ""
    reminder_type: ReminderType = ReminderType.FIRST
    attempt: int = 0


class CampaignEmailPayload(BaseModel):
    kind: Literal["send-campaign-email"] = "send-campaign-email"
    campaign_id: str
    recipient_email: str
    cart_id: Optional[str] = None
    platform: str
    run_id: Optional[str] = None
    attempt: int = 0


class ScheduledCampaignPayload(BaseModel):
    kind: Literal["process-scheduled-campaign"] = "process-scheduled-campaign"
    campaign_id: str


class DiscountOfferPayload(BaseModel):
    kind: Literal["send-discount-offer"] = "send-discount-offer"
    cart_id: str
    platform: str
    store_url: str = ""
    coupon_code: str
    coupon_amount: float
    coupon_type: Literal["percentage", "fixed"] = "percentage"
    attempt: int = 0


JobPayload = Annotated[
    Union[ReminderPayload, CampaignEmailPayload, ScheduledCampaignPayload, DiscountOfferPayload],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(data: Dict[str, Any]) -> JobPayload:
    return _payload_adapter.validate_python(data)


class Job(BaseModel):
    """A persisted unit of deferred work, as read back from the job store."""
    id: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    locked_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    fail_count: int = 0

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Job":
        fields = {k: v for k, v in document.items() if k != "_id"}
        return cls(id=str(document["_id"]), **fields)

    @property
    def payload(self) -> JobPayload:
        return parse_payload(self.data)

    @property
    def is_finished(self) -> bool:
        return self.last_finished_at is not None or self.failed_at is not None


class QueueStatus(BaseModel):
    total_jobs: int
    pending_jobs: int
    running_jobs: int
    failed_jobs: int
    next_run_time: Optional[datetime] = None
