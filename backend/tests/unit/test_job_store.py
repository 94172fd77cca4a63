# backend/tests/unit/test_job_store.py

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from cartresq.services.job_store import MongoJobStore
from cartresq.utils.errors import JobStoreUnavailableError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def store(collection):
    return MongoJobStore({"email_jobs": collection})


@pytest.mark.asyncio
async def test_insert_surfaces_store_outage(store, collection):
    """A failed write is reported to the caller instead of being dropped."""
    collection.insert_one = AsyncMock(side_effect=PyMongoError("connection refused"))

    with pytest.raises(JobStoreUnavailableError):
        await store.insert("send-campaign-email", {"campaign_id": "c"}, NOW, NOW)


@pytest.mark.asyncio
async def test_insert_returns_new_id_and_pending_document(store, collection):
    inserted = ObjectId()
    collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id=inserted))

    job_id = await store.insert("send-campaign-email", {"campaign_id": "c"}, NOW, NOW)

    assert job_id == str(inserted)
    document = collection.insert_one.call_args.args[0]
    assert document["name"] == "send-campaign-email"
    assert document["last_finished_at"] is None
    assert document["lock_expires_at"] is None


@pytest.mark.asyncio
async def test_claim_due_locks_oldest_unlocked_job(store, collection):
    job_oid = ObjectId()
    collection.find_one_and_update = AsyncMock(return_value={
        "_id": job_oid, "name": "send-abandoned-cart-reminder",
        "data": {"kind": "send-abandoned-cart-reminder", "cart_id": "1", "platform": "woocommerce"},
        "run_at": NOW, "lock_owner": "w1",
    })

    job = await store.claim_due(NOW, "w1", timedelta(minutes=10))

    assert job.id == str(job_oid)
    assert job.payload.cart_id == "1"
    query, update = collection.find_one_and_update.call_args.args
    assert query["run_at"] == {"$lte": NOW}
    assert query["last_finished_at"] is None and query["failed_at"] is None
    assert {"lock_expires_at": {"$lte": NOW}} in query["$or"]
    assert update["$set"]["lock_expires_at"] == NOW + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_claim_due_returns_none_when_idle(store, collection):
    collection.find_one_and_update = AsyncMock(return_value=None)
    assert await store.claim_due(NOW, "w1", timedelta(minutes=10)) is None


@pytest.mark.asyncio
async def test_delete_pending_refuses_empty_filter(store):
    with pytest.raises(ValueError):
        await store.delete_pending({}, NOW)


@pytest.mark.asyncio
async def test_delete_pending_any_of_ors_payload_keys(store, collection):
    collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=4))

    removed = await store.delete_pending({"cart_id": "x", "campaign_id": "x"}, NOW, any_of=True)

    assert removed == 4
    query = collection.delete_many.call_args.args[0]
    assert query["$and"][0] == {"$or": [{"data.cart_id": "x"}, {"data.campaign_id": "x"}]}
    assert query["$and"][1] == {"last_finished_at": None, "failed_at": None}


@pytest.mark.asyncio
async def test_status_counts_separates_running_from_pending(store, collection):
    collection.count_documents = AsyncMock(side_effect=[10, 1, 2, 6])
    collection.find_one = AsyncMock(return_value={"run_at": NOW})

    status = await store.status_counts(NOW)

    assert status.total_jobs == 10
    assert status.failed_jobs == 1
    assert status.running_jobs == 2
    assert status.pending_jobs == 4
    assert status.next_run_time == NOW


@pytest.mark.asyncio
async def test_reset_failed_rearms_for_now(store, collection):
    collection.update_many = AsyncMock(return_value=MagicMock(modified_count=2))

    assert await store.reset_failed(NOW) == 2

    query, update = collection.update_many.call_args.args
    assert query == {"failed_at": {"$ne": None}}
    assert update["$set"] == {"failed_at": None, "fail_reason": None, "run_at": NOW}
