# /cartresq/services/campaign_repository.py

import logging
from typing import Any, Dict, Optional

from cartresq.models.campaign import Campaign, CampaignRecipient, CampaignStatus
from cartresq.services.db_service import CAMPAIGNS_COLLECTION, as_object_id

logger = logging.getLogger(__name__)


class CampaignRepository:
    def __init__(self, db):
        self.collection = db[CAMPAIGNS_COLLECTION]

    async def get(self, campaign_id: str) -> Optional[Campaign]:
        """Raises pydantic.ValidationError for documents the dashboard saved malformed."""
        document = await self.collection.find_one({"_id": as_object_id(campaign_id)})
        return Campaign.from_document(document) if document else None

    async def save(self, campaign: Campaign) -> None:
        # recipients[] is append-only and owned by append_recipient
        document = campaign.to_document()
        document.pop("recipients", None)
        await self.collection.update_one({"_id": as_object_id(campaign.id)}, {"$set": document})

    async def update_status(self, campaign_id: str, status: CampaignStatus, extra: Optional[Dict[str, Any]] = None) -> None:
        fields: Dict[str, Any] = {"status": status.value}
        if extra:
            fields.update(extra)
        await self.collection.update_one({"_id": as_object_id(campaign_id)}, {"$set": fields})

    async def set_run_id(self, campaign_id: str, run_id: str) -> None:
        await self.collection.update_one(
            {"_id": as_object_id(campaign_id)}, {"$set": {"currentRunId": run_id}}
        )

    async def append_recipient(self, campaign_id: str, recipient: CampaignRecipient) -> None:
        await self.collection.update_one(
            {"_id": as_object_id(campaign_id)},
            {"$push": {"recipients": recipient.model_dump(by_alias=True)}}
        )
