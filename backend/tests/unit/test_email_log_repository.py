# backend/tests/unit/test_email_log_repository.py

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

from cartresq.models.email_log import SentEmail
from cartresq.services.email_log_repository import EmailLogRepository

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def sent_email():
    return SentEmail(
        platform="woocommerce", to="ana@example.com", subject="You left something behind",
        html="<p>Hi</p>", message_id="<msg-1@example.com>", sent_at=NOW,
        metadata={"type": "abandoned_cart_reminder", "reminderType": "first"},
    )


@pytest.fixture
def collection():
    return MagicMock()


@pytest.mark.asyncio
async def test_record_stores_dashboard_shaped_document(collection):
    inserted = ObjectId()
    collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id=inserted))

    email_id = await EmailLogRepository({"emails": collection}).record(sent_email())

    assert email_id == str(inserted)
    document = collection.insert_one.call_args.args[0]
    assert document["messageId"] == "<msg-1@example.com>"
    assert document["sentAt"] == NOW
    assert document["createdAt"] == NOW
    assert document["status"] == "sent"
    assert document["metadata"]["reminderType"] == "first"


@pytest.mark.asyncio
async def test_record_failure_does_not_raise(collection):
    collection.insert_one = AsyncMock(side_effect=AutoReconnect("connection reset"))

    assert await EmailLogRepository({"emails": collection}).record(sent_email()) is None
