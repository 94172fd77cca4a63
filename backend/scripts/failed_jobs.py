#!/usr/bin/env python3
"""
Operator tool for jobs the scheduler recorded as failed.

Failed jobs are never retried automatically. After fixing the cause (for example
a mail account blocked by the provider), re-arm them or purge them.

Usage:
    python scripts/failed_jobs.py list [--limit 50]
    python scripts/failed_jobs.py retry [--job-id ID]
    python scripts/failed_jobs.py purge [--older-than-days 30]
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cartresq.config.settings import settings
from cartresq.services.db_service import DatabaseService, now_utc
from cartresq.services.job_store import MongoJobStore

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def list_failed(store: MongoJobStore, limit: int):
    jobs = await store.list_failed(limit=limit)
    if not jobs:
        logger.info("No failed jobs.")
        return
    for job in jobs:
        logger.info(
            f"{job.id} {job.name} failed_at={job.failed_at} fails={job.fail_count} "
            f"data={job.data} reason={job.fail_reason}"
        )
    logger.info(f"{len(jobs)} failed job(s) shown.")


async def retry_failed(store: MongoJobStore, job_id):
    count = await store.reset_failed(now_utc(), job_id=job_id)
    logger.info(f"Re-armed {count} failed job(s) to run now.")


async def purge_failed(store: MongoJobStore, older_than_days):
    cutoff = now_utc() - timedelta(days=older_than_days) if older_than_days else None
    count = await store.purge_failed(older_than=cutoff)
    logger.info(f"Deleted {count} failed job(s).")


async def main(args):
    database = DatabaseService(settings)
    store = MongoJobStore(database.db, settings.jobs_collection)
    try:
        if args.command == "list":
            await list_failed(store, args.limit)
        elif args.command == "retry":
            await retry_failed(store, args.job_id)
        elif args.command == "purge":
            await purge_failed(store, args.older_than_days)
    finally:
        database.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Inspect, re-run or purge failed scheduler jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="Show failed jobs, newest first")
    list_cmd.add_argument("--limit", type=int, default=50)

    retry_cmd = commands.add_parser("retry", help="Re-arm failed jobs to run now")
    retry_cmd.add_argument("--job-id", default=None, help="Only this job (default: all failed jobs)")

    purge_cmd = commands.add_parser("purge", help="Delete failed jobs")
    purge_cmd.add_argument("--older-than-days", type=int, default=None)
    return parser.parse_args(argv)


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
