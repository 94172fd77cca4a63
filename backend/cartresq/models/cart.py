# /cartresq/models/cart.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

from cartresq.utils.errors import InvalidTransitionError

# The abandoned cart document is written by the store integrations; this service
# only reads it and maintains the reminder funnel bookkeeping on it.


class Platform(str, Enum):
    WOOCOMMERCE = "woocommerce"
    SHOPIFY = "shopify"


class CartStatus(str, Enum):
    ACTIVE = "active"
    ABANDONED = "abandoned"
    CONVERTED = "converted"
    RECOVERED = "recovered"


# Statuses after which no reminder may go out. "completed"/"purchased" come from
# older integrations that never used the enum above.
TERMINAL_CART_STATUSES = {"converted", "recovered", "completed", "purchased"}


class EmailStatus(str, Enum):
    """Reminder funnel markers stored in AbandonedCart.email_status."""
    PENDING = "pending"
    FIRST_REMINDER_SCHEDULED = "first_reminder_scheduled"
    FIRST_REMINDER_SENT = "first_reminder_sent"
    SECOND_REMINDER_SCHEDULED = "second_reminder_scheduled"
    SECOND_REMINDER_SENT = "second_reminder_sent"
    FINAL_REMINDER_SCHEDULED = "final_reminder_scheduled"
    FINAL_REMINDER_SENT = "final_reminder_sent"
    DISCOUNT_OFFER_SCHEDULED = "discount_offer_scheduled"
    DISCOUNT_OFFER_SENT = "discount_offer_sent"


# Stands for every marker outside the funnel: missing, "pending", and values the
# dashboard writes on its own ("sent", "reminder_sent", "discount_sent").
PRE_FUNNEL = "pre_funnel"

FUNNEL_MARKERS = [s.value for s in EmailStatus if s is not EmailStatus.PENDING]

# Target marker -> markers it may be reached from.
STATUS_TRANSITIONS: Dict[EmailStatus, Tuple[Any, ...]] = {
    EmailStatus.FIRST_REMINDER_SCHEDULED: (PRE_FUNNEL,),
    EmailStatus.FIRST_REMINDER_SENT: (EmailStatus.FIRST_REMINDER_SCHEDULED, PRE_FUNNEL),
    EmailStatus.SECOND_REMINDER_SCHEDULED: (EmailStatus.FIRST_REMINDER_SENT,),
    EmailStatus.SECOND_REMINDER_SENT: (EmailStatus.SECOND_REMINDER_SCHEDULED, EmailStatus.FIRST_REMINDER_SENT),
    EmailStatus.FINAL_REMINDER_SCHEDULED: (EmailStatus.SECOND_REMINDER_SENT,),
    EmailStatus.FINAL_REMINDER_SENT: (EmailStatus.FINAL_REMINDER_SCHEDULED, EmailStatus.SECOND_REMINDER_SENT),
    EmailStatus.DISCOUNT_OFFER_SCHEDULED: (EmailStatus.FINAL_REMINDER_SENT,),
    EmailStatus.DISCOUNT_OFFER_SENT: (EmailStatus.DISCOUNT_OFFER_SCHEDULED, EmailStatus.FINAL_REMINDER_SENT),
}


def is_pre_funnel(current: Optional[str]) -> bool:
    return current not in FUNNEL_MARKERS


def is_foreign_marker(current: Optional[str]) -> bool:
    """A marker written outside the funnel (not missing, not "pending")."""
    return bool(current) and current != EmailStatus.PENDING.value and is_pre_funnel(current)


def _funnel_sources(target: EmailStatus) -> List[str]:
    return [s.value for s in STATUS_TRANSITIONS[target] if isinstance(s, EmailStatus)]


def can_transition(current: Optional[str], target: EmailStatus) -> bool:
    if PRE_FUNNEL in STATUS_TRANSITIONS[target] and is_pre_funnel(current):
        return True
    return current in _funnel_sources(target)


def marker_condition(target: EmailStatus) -> Dict[str, Any]:
    """MongoDB condition on email_status matching exactly the markers can_transition accepts."""
    sources = _funnel_sources(target)
    if PRE_FUNNEL in STATUS_TRANSITIONS[target]:
        # $nin also matches documents without the field
        return {"$nin": [m for m in FUNNEL_MARKERS if m not in sources]}
    return {"$in": sources}


def require_transition(current: Optional[str], target: EmailStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"email_status '{current}' cannot move to '{target.value}'")


class FunnelStage(str, Enum):
    FIRST = "first"
    SECOND = "second"
    FINAL = "final"
    DISCOUNT = "discount"

    @property
    def scheduled_marker(self) -> EmailStatus:
        return _STAGE_MARKERS[self][0]

    @property
    def sent_marker(self) -> EmailStatus:
        return _STAGE_MARKERS[self][1]

    @property
    def sent_at_field(self) -> str:
        if self is FunnelStage.DISCOUNT:
            return "discount_offer_sent_at"
        return f"{self.value}_reminder_sent_at"

    @property
    def scheduled_at_field(self) -> str:
        if self is FunnelStage.DISCOUNT:
            return "discount_offer_scheduled_at"
        return f"{self.value}_reminder_scheduled_at"


_STAGE_MARKERS = {
    FunnelStage.FIRST: (EmailStatus.FIRST_REMINDER_SCHEDULED, EmailStatus.FIRST_REMINDER_SENT),
    FunnelStage.SECOND: (EmailStatus.SECOND_REMINDER_SCHEDULED, EmailStatus.SECOND_REMINDER_SENT),
    FunnelStage.FINAL: (EmailStatus.FINAL_REMINDER_SCHEDULED, EmailStatus.FINAL_REMINDER_SENT),
    FunnelStage.DISCOUNT: (EmailStatus.DISCOUNT_OFFER_SCHEDULED, EmailStatus.DISCOUNT_OFFER_SENT),
}

_MARKER_RANK = {status: rank for rank, status in enumerate(EmailStatus)}


def stage_already_sent(current: Optional[str], stage: FunnelStage) -> bool:
    """True when the cart's marker is at or past the sent marker of `stage`."""
    if is_pre_funnel(current):
        return False
    return _MARKER_RANK[EmailStatus(current)] >= _MARKER_RANK[stage.sent_marker]


class AbandonedCart(BaseModel):
    """Loosely typed on purpose: items come straight from WooCommerce/Shopify payloads."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    platform: str
    cart_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_data: Dict[str, Any] = Field(default_factory=dict)
    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: float = 0.0
    status: str = CartStatus.ACTIVE.value
    store_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_activity: Optional[datetime] = None

    email_status: Optional[str] = None
    first_reminder_sent_at: Optional[datetime] = None
    second_reminder_sent_at: Optional[datetime] = None
    final_reminder_sent_at: Optional[datetime] = None
    reminder_attempts: int = 0
    discount_offer_sent: bool = False
    discount_offer_sent_at: Optional[datetime] = None
    discount_code: Optional[str] = None

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "AbandonedCart":
        doc = dict(document)
        if "_id" in doc:
            doc["_id"] = str(doc["_id"])
        if not isinstance(doc.get("items"), list):
            doc["items"] = []
        return cls.model_validate(doc)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CART_STATUSES

    @property
    def resolved_store_url(self) -> str:
        return self.store_url or self.metadata.get("storeUrl") or ""

    @property
    def display_name(self) -> str:
        if self.customer_data.get("first_name"):
            return self.customer_data["first_name"]
        if self.customer_name:
            return self.customer_name
        if self.customer_email:
            return self.customer_email.split("@")[0]
        return ""
