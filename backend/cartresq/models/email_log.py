# /cartresq/models/email_log.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

# One document per email that left the mailer. The dashboard's analytics read
# these, and carts point at their latest reminder through last_reminder_id.


class EmailLogType(str, Enum):
    ABANDONED_CART_REMINDER = "abandoned_cart_reminder"
    DISCOUNT_OFFER = "discount_offer"
    CAMPAIGN = "campaign"


class SentEmail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str
    to: str
    subject: str
    html: str
    message_id: Optional[str] = Field(default=None, alias="messageId")
    status: str = "sent"
    sent_at: datetime = Field(alias="sentAt")
    # ObjectId of the cart/campaign document, when known
    cart_id: Optional[Any] = None
    campaign_id: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        document = self.model_dump(by_alias=True)
        # Same timestamps the dashboard's own writes carry
        document["createdAt"] = self.sent_at
        document["updatedAt"] = self.sent_at
        return document
