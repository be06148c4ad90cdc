"""
Operator entry point for reminder maintenance.

    python backfill.py soft-delete-defaults --apply --collections medications,medication_reminders
    python backfill.py reminder-timing --apply --max-pages 10
    python backfill.py purge-reminders --retention-days 90

Runs are dry unless ``--apply`` is passed.
"""
import argparse
import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorClient

import config
from maintenance import (
    DEFAULT_PURGE_PAGE_SIZE,
    DEFAULT_SOFT_DELETE_PAGE_SIZE,
    DEFAULT_TIMING_PAGE_SIZE,
    backfill_reminder_timing_policy,
    backfill_soft_delete_defaults,
    purge_soft_deleted_reminders,
)
from reminder_store import MongoReminderStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("backfill")


def parse_collections(raw):
    if not raw:
        return None
    return [entry.strip() for entry in raw.split(",") if entry.strip()]

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Medication reminder maintenance jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    soft_delete = commands.add_parser("soft-delete-defaults", help="Add deleted_at/deleted_by where missing")
    soft_delete.add_argument("--apply", action="store_true", default=False)
    soft_delete.add_argument("--page-size", type=int, default=DEFAULT_SOFT_DELETE_PAGE_SIZE)
    soft_delete.add_argument("--collections", default="")

    timing = commands.add_parser("reminder-timing", help="Fill missing reminder timing policy fields")
    timing.add_argument("--apply", action="store_true", default=False)
    timing.add_argument("--page-size", type=int, default=DEFAULT_TIMING_PAGE_SIZE)
    timing.add_argument("--max-pages", type=int, default=1)

    purge = commands.add_parser("purge-reminders", help="Hard-delete reminders past soft-delete retention")
    purge.add_argument("--apply", action="store_true", default=False)
    purge.add_argument("--retention-days", type=int, default=config.SOFT_DELETE_RETENTION_DAYS)
    purge.add_argument("--page-size", type=int, default=DEFAULT_PURGE_PAGE_SIZE)

    return parser

async def run(args, db) -> None:
    if args.command == "soft-delete-defaults":
        summaries = await backfill_soft_delete_defaults(
            db,
            collections=parse_collections(args.collections),
            page_size=args.page_size,
            apply=args.apply,
        )
        for summary in summaries:
            logger.info(f"[Backfill] Summary: {summary}")
        return

    store = MongoReminderStore(db)
    if args.command == "reminder-timing":
        for page_number in range(1, max(1, args.max_pages) + 1):
            result = await backfill_reminder_timing_policy(
                store,
                page_size=args.page_size,
                dry_run=not args.apply,
                default_timezone=config.DEFAULT_TIMEZONE,
            )
            logger.info(f"[Backfill] Page {page_number}: {result}")
            # A dry run never advances the cursor, so later pages would repeat this one.
            if not result["has_more"] or not args.apply:
                break
        return

    if args.command == "purge-reminders":
        result = await purge_soft_deleted_reminders(
            store,
            retention_days=args.retention_days,
            page_size=args.page_size,
            dry_run=not args.apply,
        )
        logger.info(f"[Retention] Summary: {result}")

def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    if not config.MONGO_URL:
        raise SystemExit("MONGO_URL is not set")

    client = AsyncIOMotorClient(config.MONGO_URL, tz_aware=True)
    try:
        asyncio.run(run(args, client[config.DB_NAME]))
    finally:
        client.close()


if __name__ == "__main__":
    main()
