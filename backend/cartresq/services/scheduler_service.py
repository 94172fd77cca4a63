# /cartresq/services/scheduler_service.py

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import tenacity

from cartresq.models.job import Job, JobName, JobPayload, QueueStatus
from cartresq.services.db_service import now_utc
from cartresq.utils.errors import UnknownJobError
from cartresq.utils.metrics import (
    jobs_cancelled_counter, jobs_executed_counter, jobs_scheduled_counter, queue_depth_gauge
)

# Persistent delayed-job engine. Everything that must happen "later" (including
# "now, but queued") goes through schedule(); a poll loop claims due jobs from the
# durable store and runs the handler registered for the job's kind.

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any, Job], Awaitable[None]]


class JobScheduler:
    def __init__(
        self,
        store,
        poll_interval: float = 5.0,
        max_concurrency: int = 5,
        lock_lifetime: timedelta = timedelta(minutes=10),
        shutdown_timeout: float = 120.0,
        alerting=None,
        clock: Callable[[], datetime] = now_utc,
        complete_retry_wait=tenacity.wait_exponential(multiplier=1, min=1, max=8),
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.max_concurrency = max_concurrency
        self.lock_lifetime = lock_lifetime
        self.shutdown_timeout = shutdown_timeout
        self.alerting = alerting
        self.clock = clock
        self.complete_retry_wait = complete_retry_wait
        self.worker_name = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:4]}"

        self._handlers: Dict[str, JobHandler] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.running = False

    # --- Registration and submission ---

    def register(self, name: JobName, handler: JobHandler) -> None:
        key = name.value if isinstance(name, JobName) else name
        if key in self._handlers:
            logger.warning(f"Replacing handler for job '{key}'")
        self._handlers[key] = handler

    async def schedule(self, run_at: datetime, payload: JobPayload) -> str:
        """
        Persists a job for `payload.kind` at `run_at`. Never runs it inline.
        Raises JobStoreUnavailableError when the store cannot be written.
        """
        now = self.clock()
        job_id = await self.store.insert(payload.kind, payload.model_dump(mode="json"), run_at, now)
        jobs_scheduled_counter.labels(job_name=payload.kind).inc()
        logger.debug(f"Scheduled job {job_id} ({payload.kind}) for {run_at.isoformat()}")
        if run_at <= now and self._wakeup is not None:
            self._wakeup.set()
        return job_id

    async def jobs_matching(self, data_filter: Dict[str, Any], include_finished: bool = True) -> List[Job]:
        return await self.store.find(data_filter, include_finished=include_finished)

    async def cancel(self, job_id: str) -> bool:
        removed = await self.store.delete(job_id, self.clock())
        if removed:
            jobs_cancelled_counter.inc()
        return removed

    async def cancel_matching(self, data_filter: Dict[str, Any], any_of: bool = False) -> int:
        """Removes pending jobs whose payload matches. Safe to call repeatedly."""
        removed = await self.store.delete_pending(data_filter, self.clock(), any_of=any_of)
        if removed:
            jobs_cancelled_counter.inc(removed)
            logger.info(f"Cancelled {removed} pending job(s) matching {data_filter}")
        return removed

    async def queue_status(self) -> QueueStatus:
        status = await self.store.status_counts(self.clock())
        queue_depth_gauge.labels(state="pending").set(status.pending_jobs)
        queue_depth_gauge.labels(state="running").set(status.running_jobs)
        queue_depth_gauge.labels(state="failed").set(status.failed_jobs)
        return status

    # --- Poll loop ---

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._wakeup = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Job scheduler '{self.worker_name}' started "
            f"(poll every {self.poll_interval}s, concurrency {self.max_concurrency})."
        )

    async def stop(self) -> None:
        """Stops claiming new jobs and waits for in-flight jobs to finish. Never cancels a running job."""
        if not self.running:
            return
        self.running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight job(s) to finish...")
            _, pending = await asyncio.wait(set(self._in_flight), timeout=self.shutdown_timeout)
            if pending:
                logger.error(
                    f"{len(pending)} job(s) still running after {self.shutdown_timeout}s; "
                    "their locks will expire and another worker will pick them up."
                )
        logger.info(f"Job scheduler '{self.worker_name}' stopped.")

    async def run_pending(self) -> int:
        """Claims due jobs up to free capacity and starts them. Returns how many were started."""
        started = 0
        while len(self._in_flight) < self.max_concurrency:
            job = await self.store.claim_due(self.clock(), self.worker_name, self.lock_lifetime)
            if job is None:
                break
            task = asyncio.create_task(self._execute(job))
            self._in_flight.add(task)
            task.add_done_callback(self._on_task_done)
            started += 1
        return started

    async def drain(self) -> None:
        """Waits until every started job has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _poll_loop(self):
        while self.running:
            try:
                await self.run_pending()
            except Exception as e:
                # Store outages must not kill the loop; the next poll retries.
                logger.error(f"Job poll failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def _on_task_done(self, task: asyncio.Task):
        self._in_flight.discard(task)
        # Capacity freed up: poll again without waiting for the interval.
        if self.running and self._wakeup is not None:
            self._wakeup.set()

    async def _execute(self, job: Job):
        handler = self._handlers.get(job.name)
        try:
            if handler is None:
                raise UnknownJobError(f"No handler registered for job '{job.name}'")
            await handler(job.payload, job)
        except Exception as e:
            logger.error(f"Job {job.id} ({job.name}) failed: {e}", exc_info=True)
            jobs_executed_counter.labels(job_name=job.name, outcome="failed").inc()
            await self._record_failure(job, e)
            return

        jobs_executed_counter.labels(job_name=job.name, outcome="completed").inc()
        try:
            await self._mark_complete(job)
        except Exception as e:
            # The handler's side effect already happened; once the lock expires
            # another worker will run it again.
            logger.critical(f"Job {job.id} ({job.name}) ran but could not be marked complete: {e}", exc_info=True)
            if self.alerting:
                await self.alerting.send_critical_alert(
                    f"Job {job.name} ran but could not be marked complete",
                    {"job_id": job.id, "job_name": job.name, "reason": f"{type(e).__name__}: {e}", "data": job.data}
                )

    async def _mark_complete(self, job: Job):
        async for attempt in tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(3),
            wait=self.complete_retry_wait,
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self.store.complete(job.id, self.clock())

    async def _record_failure(self, job: Job, error: Exception):
        reason = f"{type(error).__name__}: {error}"
        try:
            await self.store.fail(job.id, self.clock(), reason)
        except Exception as e:
            logger.error(f"Could not record failure for job {job.id}: {e}", exc_info=True)
        if self.alerting:
            await self.alerting.send_critical_alert(
                f"Job {job.name} failed",
                {"job_id": job.id, "job_name": job.name, "reason": reason, "data": job.data}
            )
