# /cartresq/services/email_log_repository.py

import logging
from typing import Optional
from pymongo.errors import PyMongoError

from cartresq.models.email_log import SentEmail
from cartresq.services.db_service import EMAILS_COLLECTION

logger = logging.getLogger(__name__)


class EmailLogRepository:
    def __init__(self, db):
        self.collection = db[EMAILS_COLLECTION]

    async def record(self, email: SentEmail) -> Optional[str]:
        """
        Stores the sent email and returns its id. The email has already gone out,
        so a failed write is logged and None returned instead of failing the job
        (which would leave the cart's funnel marker unset).
        """
        try:
            result = await self.collection.insert_one(email.to_document())
        except PyMongoError as e:
            logger.error(f"Could not record {email.metadata.get('type', 'email')} sent ({email.message_id}): {e}")
            return None
        return str(result.inserted_id)
