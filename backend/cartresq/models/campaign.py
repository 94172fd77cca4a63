# /cartresq/models/campaign.py

from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Campaign documents are authored by the dashboard and stored with camelCase keys
# (targetAudience, customerEmails, timeOfDay ...). Models accept both spellings
# and dump back to camelCase.


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SENT = "sent"


RUNNABLE_CAMPAIGN_STATUSES = {CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE}


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AudienceType(str, Enum):
    ALL = "all"
    ABANDONED_CARTS = "abandoned_carts"
    SPECIFIC_CUSTOMERS = "specific_customers"
    CUSTOMER_GROUPS = "customer_groups"


class AudienceFilters(_CamelModel):
    min_cart_value: Optional[float] = None
    max_cart_value: Optional[float] = None
    customer_emails: List[str] = Field(default_factory=list)
    customer_groups: List[str] = Field(default_factory=list)

    @field_validator("min_cart_value", "max_cart_value", mode="before")
    @classmethod
    def blank_means_unset(cls, v):
        # The dashboard posts "" for empty numeric inputs
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @field_validator("customer_emails", mode="before")
    @classmethod
    def none_means_empty(cls, v):
        return v or []


class TargetAudience(_CamelModel):
    type: AudienceType
    filters: AudienceFilters = Field(default_factory=AudienceFilters)
    # Older documents keep the allowlist next to the type instead of under filters
    customer_emails: List[str] = Field(default_factory=list)

    @field_validator("customer_emails", mode="before")
    @classmethod
    def none_means_empty(cls, v):
        return v or []

    @property
    def allowlist(self) -> List[str]:
        return self.filters.customer_emails or self.customer_emails


class CampaignSchedule(_CamelModel):
    start_date: datetime
    end_date: Optional[datetime] = None
    timezone: str = "UTC"
    frequency: Frequency = Frequency.ONCE
    days_of_week: List[int] = Field(default_factory=list)
    time_of_day: Optional[str] = None

    @field_validator("time_of_day")
    @classmethod
    def time_of_day_format(cls, v):
        if v is None or v == "":
            return None
        hours, _, minutes = v.partition(":")
        if not (hours.isdigit() and minutes.isdigit() and int(hours) < 24 and int(minutes) < 60):
            raise ValueError("timeOfDay must be HH:MM")
        return f"{int(hours):02d}:{int(minutes):02d}"

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def clock_time(self) -> Optional[time]:
        if not self.time_of_day:
            return None
        hours, minutes = self.time_of_day.split(":")
        return time(int(hours), int(minutes), tzinfo=timezone.utc)

    def first_run_at(self) -> datetime:
        """startDate's calendar day at timeOfDay (UTC), or startDate itself."""
        clock = self.clock_time
        if clock is None:
            return self.start_date
        return datetime.combine(self.start_date.date(), clock)


class CampaignContent(_CamelModel):
    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_type: Optional[str] = None
    coupon_amount: Optional[float] = None


class CampaignRecipient(_CamelModel):
    email: str
    cart_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    message_id: Optional[str] = None
    status: str = "sent"
    run_id: Optional[str] = None
    opened: bool = False
    clicked: bool = False
    converted: bool = False


class Campaign(_CamelModel):
    id: Optional[str] = Field(default=None, alias="_id")
    name: str = ""
    type: str = "email"
    status: CampaignStatus = CampaignStatus.DRAFT
    platform: str
    store_id: Optional[str] = None
    store_url: Optional[str] = None
    target_audience: Optional[TargetAudience] = None
    schedule: Optional[CampaignSchedule] = None
    content: CampaignContent = Field(default_factory=CampaignContent)
    recipients: List[CampaignRecipient] = Field(default_factory=list)
    current_run_id: Optional[str] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Campaign":
        doc = dict(document)
        if "_id" in doc:
            doc["_id"] = str(doc["_id"])
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"}, mode="python")

    @property
    def is_recurring(self) -> bool:
        return self.schedule is not None and self.schedule.frequency != Frequency.ONCE

    def emails_sent_in_run(self, run_id: Optional[str]) -> set:
        if not run_id:
            return set()
        return {
            r.email.strip().lower() for r in self.recipients
            if r.run_id == run_id and r.status == "sent"
        }
