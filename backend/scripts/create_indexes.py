#!/usr/bin/env python3
"""
Database setup script for the scheduling core.

Creates indexes on:
- abandonedcarts: unique (platform, cart_id) plus the funnel scan and audience indexes
- campaigns: (status, schedule.startDate)
- email_jobs: (run_at, lock_expires_at), data.cart_id, data.campaign_id, failed_at

Safe to run repeatedly; the worker also runs it on startup.

Usage:
    python scripts/create_indexes.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Allow running from a source checkout without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent))

from cartresq.config.settings import settings
from cartresq.services.db_service import DatabaseService
from cartresq.services.job_store import MongoJobStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_indexes() -> bool:
    database = DatabaseService(settings)
    try:
        if not await database.health_check():
            logger.error("MongoDB is not reachable; no indexes created.")
            return False
        logger.info(f"Connected to database: {database.db.name}")

        await database.create_indexes()
        await MongoJobStore(database.db, settings.jobs_collection).create_indexes()
        logger.info(f"Job store indexes ensured on '{settings.jobs_collection}'.")
        return True
    finally:
        database.close()
        logger.info("MongoDB connection closed")


if __name__ == "__main__":
    ok = asyncio.run(create_indexes())
    sys.exit(0 if ok else 1)
