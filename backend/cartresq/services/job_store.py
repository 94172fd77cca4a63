# /cartresq/services/job_store.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from cartresq.models.job import Job, QueueStatus
from cartresq.services.db_service import as_object_id
from cartresq.utils.errors import JobStoreUnavailableError

logger = logging.getLogger(__name__)


def _data_query(data_filter: Dict[str, Any], any_of: bool = False) -> Dict[str, Any]:
    """{"campaign_id": X} -> {"data.campaign_id": X}; any_of ORs the keys together."""
    clauses = {f"data.{key}": value for key, value in data_filter.items()}
    if any_of and len(clauses) > 1:
        return {"$or": [{key: value} for key, value in clauses.items()]}
    return clauses


def _unlocked(now: datetime) -> Dict[str, Any]:
    return {"$or": [{"lock_expires_at": None}, {"lock_expires_at": {"$lte": now}}]}


# Pending = not finished, not failed. Terminal jobs stay in the collection for inspection.
_PENDING = {"last_finished_at": None, "failed_at": None}


class MongoJobStore:
    """
    Durable job collection. Every state change is a single-document update so
    several worker processes can poll the same collection.
    """

    def __init__(self, db, collection_name: str = "email_jobs"):
        self.collection = db[collection_name]

    async def create_indexes(self) -> None:
        indexes = [
            ([("run_at", ASCENDING), ("lock_expires_at", ASCENDING)], {}),
            ([("data.cart_id", ASCENDING)], {"sparse": True}),
            ([("data.campaign_id", ASCENDING)], {"sparse": True}),
            ([("failed_at", ASCENDING)], {"sparse": True}),
        ]
        for keys, options in indexes:
            try:
                await self.collection.create_index(keys, **options)
            except PyMongoError as e:
                logger.error(f"Failed to create job index {keys}: {e}")

    async def insert(self, name: str, data: Dict[str, Any], run_at: datetime, now: datetime) -> str:
        document = {
            "name": name,
            "data": data,
            "run_at": run_at,
            "created_at": now,
            "lock_owner": None,
            "locked_at": None,
            "lock_expires_at": None,
            "last_run_at": None,
            "last_finished_at": None,
            "failed_at": None,
            "fail_reason": None,
            "fail_count": 0,
        }
        try:
            result = await self.collection.insert_one(document)
        except PyMongoError as e:
            raise JobStoreUnavailableError(f"Could not persist job '{name}': {e}") from e
        return str(result.inserted_id)

    async def claim_due(self, now: datetime, owner: str, lock_lifetime: timedelta) -> Optional[Job]:
        """Atomically lock the oldest due job. Expired locks (crashed workers) are claimable."""
        document = await self.collection.find_one_and_update(
            {"run_at": {"$lte": now}, **_PENDING, **_unlocked(now)},
            {"$set": {
                "lock_owner": owner,
                "locked_at": now,
                "lock_expires_at": now + lock_lifetime,
            }},
            sort=[("run_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        return Job.from_document(document) if document else None

    async def complete(self, job_id: str, now: datetime) -> None:
        await self.collection.update_one(
            {"_id": ObjectId(job_id)},
            {"$set": {
                "last_run_at": now,
                "last_finished_at": now,
                "lock_owner": None,
                "locked_at": None,
                "lock_expires_at": None,
            }}
        )

    async def fail(self, job_id: str, now: datetime, reason: str) -> None:
        await self.collection.update_one(
            {"_id": ObjectId(job_id)},
            {
                "$set": {
                    "last_run_at": now,
                    "failed_at": now,
                    "fail_reason": reason[:2000],
                    "lock_owner": None,
                    "locked_at": None,
                    "lock_expires_at": None,
                },
                "$inc": {"fail_count": 1},
            }
        )

    async def get(self, job_id: str) -> Optional[Job]:
        document = await self.collection.find_one({"_id": as_object_id(job_id)})
        return Job.from_document(document) if document else None

    async def find(self, data_filter: Dict[str, Any], include_finished: bool = True) -> List[Job]:
        query = _data_query(data_filter)
        if not include_finished:
            query.update(_PENDING)
        cursor = self.collection.find(query).sort("run_at", ASCENDING)
        return [Job.from_document(doc) for doc in await cursor.to_list(length=None)]

    async def delete(self, job_id: str, now: datetime) -> bool:
        """Removes one job unless it is finished or currently running."""
        result = await self.collection.delete_one(
            {"$and": [{"_id": as_object_id(job_id)}, _PENDING, _unlocked(now)]}
        )
        return result.deleted_count > 0

    async def delete_pending(self, data_filter: Dict[str, Any], now: datetime, any_of: bool = False) -> int:
        """
        Removes not-yet-executed jobs matching the filter. Jobs holding a live lock
        are left alone: cancellation only prevents future runs.
        """
        if not data_filter:
            raise ValueError("Refusing to cancel jobs with an empty filter")
        query = {"$and": [_data_query(data_filter, any_of=any_of), _PENDING, _unlocked(now)]}
        result = await self.collection.delete_many(query)
        return result.deleted_count

    async def status_counts(self, now: datetime) -> QueueStatus:
        total = await self.collection.count_documents({})
        failed = await self.collection.count_documents({"failed_at": {"$ne": None}})
        running = await self.collection.count_documents(
            {**_PENDING, "lock_expires_at": {"$gt": now}}
        )
        pending = await self.collection.count_documents(_PENDING)
        next_job = await self.collection.find_one(
            {**_PENDING, "run_at": {"$ne": None}}, sort=[("run_at", ASCENDING)]
        )
        return QueueStatus(
            total_jobs=total,
            pending_jobs=pending - running,
            running_jobs=running,
            failed_jobs=failed,
            next_run_time=next_job["run_at"] if next_job else None,
        )

    async def list_failed(self, limit: int = 100) -> List[Job]:
        cursor = self.collection.find({"failed_at": {"$ne": None}}).sort("failed_at", -1)
        return [Job.from_document(doc) for doc in await cursor.to_list(length=limit)]

    async def reset_failed(self, now: datetime, job_id: Optional[str] = None) -> int:
        """Re-arms failed jobs to run at `now` (operator action after fixing the cause)."""
        query: Dict[str, Any] = {"failed_at": {"$ne": None}}
        if job_id:
            query["_id"] = as_object_id(job_id)
        result = await self.collection.update_many(
            query,
            {"$set": {"failed_at": None, "fail_reason": None, "run_at": now}}
        )
        return result.modified_count

    async def purge_failed(self, older_than: Optional[datetime] = None) -> int:
        query: Dict[str, Any] = {"failed_at": {"$ne": None}}
        if older_than:
            query["failed_at"] = {"$lt": older_than}
        result = await self.collection.delete_many(query)
        return result.deleted_count
