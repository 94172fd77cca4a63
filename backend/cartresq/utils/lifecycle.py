# /cartresq/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager

from cartresq.utils.logging import setup_logging

# Startup and shutdown of the worker process: indexes, handler registration,
# the job poller and the funnel cron scheduler.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def worker_lifespan(container):
    """Worker lifespan manager for startup and shutdown events."""
    setup_logging(container.settings)

    logger.info("Worker starting up...")

    await container.database.create_indexes()
    await container.job_store.create_indexes()

    container.register_job_handlers()
    container.funnel.register(container.cron_scheduler)

    await container.scheduler.start()
    container.cron_scheduler.start()

    logger.info("Worker startup complete. Polling for jobs.")

    try:
        yield container  # Worker is now running
    finally:
        logger.info("Worker shutting down...")

        # Stop producing work first, then let in-flight sends finish.
        container.cron_scheduler.shutdown(wait=False)
        await container.scheduler.stop()
        await container.close()
        logger.info("Worker shutdown complete.")
