"""
Resumable maintenance jobs for medication reminders and soft-deleted data.

Every job writes in chunks below ``MAX_BATCH_SIZE`` so a failure part-way
through leaves earlier chunks applied; re-running picks up where the last
run stopped.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo import UpdateOne

from reminder_dispatch import resolve_reminder_timing_policy, timing_policy_updates, utc_now
from reminder_store import MAX_BATCH_SIZE, MongoReminderStore

logger = logging.getLogger(__name__)

TIMING_BACKFILL_STATE_KEY = "medication_reminder_timing_policy_backfill"
DEFAULT_TIMING_PAGE_SIZE = 250
DEFAULT_PURGE_PAGE_SIZE = 250
DEFAULT_PURGE_MAX_PAGES = 20
DEFAULT_RETENTION_DAYS = 90
DEFAULT_SOFT_DELETE_PAGE_SIZE = 500
MAX_SOFT_DELETE_PAGE_SIZE = 1000

SOFT_DELETE_COLLECTIONS = [
    "visits",
    "actions",
    "medications",
    "health_logs",
    "care_tasks",
    "medication_reminders",
]


# ==================== TIMING POLICY BACKFILL ====================

async def backfill_reminder_timing_policy(
    store: MongoReminderStore,
    page_size: int = DEFAULT_TIMING_PAGE_SIZE,
    dry_run: bool = False,
    now: Optional[datetime] = None,
    default_timezone: Optional[str] = None,
) -> dict:
    """Fill missing timing policy fields for one page of reminders and advance the stored cursor."""
    now = now or utc_now()
    state = await store.get_maintenance_state(TIMING_BACKFILL_STATE_KEY)
    cursor = state.get("cursor_reminder_id")

    page = await store.list_timing_backfill_page(cursor=cursor, limit=page_size)

    policy_kwargs = {"default_timezone": default_timezone} if default_timezone else {}
    updates = []
    timezone_cache = {}
    for reminder in page.items:
        if reminder.user_id not in timezone_cache:
            timezone_cache[reminder.user_id] = await store.get_user_timezone(reminder.user_id)
        policy = resolve_reminder_timing_policy(
            reminder.medication_name,
            timezone_cache[reminder.user_id],
            timing_mode=reminder.timing_mode,
            anchor_timezone=reminder.anchor_timezone,
            criticality=reminder.criticality,
            **policy_kwargs,
        )
        fields = timing_policy_updates(reminder, policy)
        if fields:
            updates.append((reminder.id, {**fields, "updated_at": now}))

    updated = 0
    if not dry_run:
        updated = await store.apply_reminder_updates(updates)
        await store.set_maintenance_state(TIMING_BACKFILL_STATE_KEY, {
            "cursor_reminder_id": page.next_cursor,
            "page_size": page_size,
            "last_processed_at": now,
            "last_run": {"processed": page.processed_count, "updated": updated, "invalid_ids": page.invalid_ids},
            "completed_at": None if page.has_more else now,
        })

    logger.info(
        f"[Backfill] Reminder timing page: processed={page.processed_count} "
        f"needs_update={len(updates)} invalid={len(page.invalid_ids)} updated={updated} has_more={page.has_more} dry_run={dry_run}"
    )
    return {
        "processed": page.processed_count,
        "needs_update": len(updates),
        "invalid": len(page.invalid_ids),
        "updated": updated,
        "has_more": page.has_more,
        "next_cursor": page.next_cursor,
        "dry_run": dry_run,
    }


# ==================== SOFT-DELETE RETENTION ====================

async def purge_soft_deleted_reminders(
    store: MongoReminderStore,
    cutoff: Optional[datetime] = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    page_size: int = DEFAULT_PURGE_PAGE_SIZE,
    max_pages: int = DEFAULT_PURGE_MAX_PAGES,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """Hard-delete reminders soft-deleted on or before ``cutoff`` (default: now minus retention)."""
    if retention_days < 0:
        raise ValueError("retention_days must be >= 0")
    now = now or utc_now()
    cutoff = cutoff or now - timedelta(days=retention_days)
    page_size = max(1, int(page_size))

    scanned = 0
    purged = 0
    has_more = False
    for _ in range(max(1, int(max_pages))):
        items = await store.list_soft_deleted_by_cutoff(cutoff, page_size)
        scanned += len(items)
        has_more = len(items) == page_size
        if not items:
            break
        if dry_run:
            # Nothing is removed, so the next page would be the same one.
            break
        purged += await store.delete_reminder_ids([doc["id"] for doc in items])
        if not has_more:
            break

    logger.info(
        f"[Retention] Reminder purge: scanned={scanned} purged={purged} "
        f"has_more={has_more} cutoff={cutoff.isoformat()} dry_run={dry_run}"
    )
    return {
        "scanned": scanned,
        "purged": purged,
        "has_more": has_more,
        "cutoff": cutoff.isoformat(),
    }


# ==================== SOFT-DELETE DEFAULTS ====================

def missing_soft_delete_fields(doc: dict) -> dict:
    updates = {}
    if "deleted_at" not in doc:
        updates["deleted_at"] = None
    if "deleted_by" not in doc:
        updates["deleted_by"] = None
    return updates

async def backfill_collection_soft_delete_defaults(db, collection: str, page_size: int, apply: bool) -> dict:
    scanned = 0
    needs_update = 0
    updated = 0
    last_id = None

    while True:
        query = {"_id": {"$gt": last_id}} if last_id is not None else {}
        docs = await db[collection].find(
            query,
            {"_id": 1, "deleted_at": 1, "deleted_by": 1},
        ).sort("_id", 1).limit(page_size).to_list(page_size)
        if not docs:
            break

        pending = []
        for doc in docs:
            scanned += 1
            fields = missing_soft_delete_fields(doc)
            if not fields:
                continue
            needs_update += 1
            if apply:
                pending.append(UpdateOne({"_id": doc["_id"]}, {"$set": fields}))

        for index in range(0, len(pending), MAX_BATCH_SIZE):
            chunk = pending[index:index + MAX_BATCH_SIZE]
            await db[collection].bulk_write(chunk, ordered=False)
            updated += len(chunk)

        last_id = docs[-1]["_id"]
        logger.info(
            f"[Backfill] {collection}: scanned={scanned}, needs_update={needs_update}, updated={updated}"
        )
        if len(docs) < page_size:
            break

    return {
        "collection": collection,
        "scanned": scanned,
        "needs_update": needs_update,
        "updated": updated,
    }

async def backfill_soft_delete_defaults(
    db,
    collections: Optional[List[str]] = None,
    page_size: int = DEFAULT_SOFT_DELETE_PAGE_SIZE,
    apply: bool = False,
) -> List[dict]:
    """Add ``deleted_at``/``deleted_by`` = None wherever either field is absent."""
    collections = [c.strip() for c in (collections or SOFT_DELETE_COLLECTIONS) if c and c.strip()]
    page_size = min(max(1, int(page_size)), MAX_SOFT_DELETE_PAGE_SIZE)
    logger.info(
        f"[Backfill] Soft-delete defaults starting (apply={apply}, page_size={page_size}, "
        f"collections={','.join(collections)})"
    )
    summaries = []
    for collection in collections:
        summaries.append(await backfill_collection_soft_delete_defaults(db, collection, page_size, apply))
    return summaries
