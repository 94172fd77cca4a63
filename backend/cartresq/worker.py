# /cartresq/worker.py

import asyncio
import logging
import signal

from cartresq.bootstrap import build_services
from cartresq.config.settings import settings
from cartresq.utils.lifecycle import worker_lifespan

logger = logging.getLogger("WorkerService")


async def log_queue_status(container):
    try:
        status = await container.email_scheduler.queue_status()
    except Exception as e:
        logger.error(f"Could not read queue status: {e}")
        return
    logger.info(
        f"Queue status: {status.pending_jobs} pending, {status.running_jobs} running, "
        f"{status.failed_jobs} failed, next run {status.next_run_time}"
    )


async def main():
    container = build_services(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    async with worker_lifespan(container):
        container.cron_scheduler.add_job(
            log_queue_status,
            'interval',
            hours=1,
            args=[container],
            id="queue_status_report_job",
            replace_existing=True
        )
        logger.info("Scheduled job: log_queue_status (every hour).")

        await stop_event.wait()
        logger.info("Termination signal received.")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
