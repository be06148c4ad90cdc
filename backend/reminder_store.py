"""
Storage adapter for medication-reminder processing.

Wraps the ``medication_reminders`` collection plus the point lookups the
dispatcher needs (``medications``, ``users``, ``medication_logs``) and the
cursor bookkeeping used by maintenance jobs (``maintenance_state``).
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError
from pymongo import UpdateOne

logger = logging.getLogger(__name__)

REMINDERS_COLLECTION = "medication_reminders"
MEDICATIONS_COLLECTION = "medications"
USERS_COLLECTION = "users"
MEDICATION_LOGS_COLLECTION = "medication_logs"
MAINTENANCE_STATE_COLLECTION = "maintenance_state"

MAX_BATCH_SIZE = 400

ReminderUpdate = Tuple[str, dict]


class MedicationReminder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    user_id: str
    medication_id: str
    medication_name: str = ""
    medication_dose: Optional[str] = None
    times: List[str] = []
    # Unknown legacy values are normalized by resolve_reminder_timing_policy.
    timing_mode: Optional[str] = None
    anchor_timezone: Optional[str] = None
    criticality: Optional[str] = None
    enabled: bool = True
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    last_sent_at: Optional[datetime] = None
    last_sent_lock_until: Optional[datetime] = None
    last_sent_lock_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class MedicationState(BaseModel):
    id: str
    exists: bool
    active: bool
    deleted_at: Optional[datetime] = None

    @property
    def dispatchable(self) -> bool:
        return self.exists and self.active and self.deleted_at is None

class TimingBackfillPage(BaseModel):
    items: List[MedicationReminder] = []
    invalid_ids: List[str] = []
    processed_count: int = 0
    has_more: bool = False
    next_cursor: Optional[str] = None


def _require_id(value: str, name: str) -> str:
    if not value or not str(value).strip():
        raise ValueError(f"{name} is required")
    return str(value).strip()

def _chunks(items: List, size: int) -> Iterable[List]:
    for index in range(0, len(items), size):
        yield items[index:index + size]


class MongoReminderStore:
    def __init__(self, db, max_batch_size: int = MAX_BATCH_SIZE):
        self.db = db
        self.max_batch_size = max(1, int(max_batch_size))

    @property
    def reminders(self):
        return self.db[REMINDERS_COLLECTION]

    async def list_enabled_reminders(self) -> List[dict]:
        """Raw documents; the dispatcher validates each one inside its per-item error handling."""
        return await self.reminders.find({"enabled": True}, {"_id": 0}).to_list(None)

    async def get_reminder(self, reminder_id: str) -> Optional[MedicationReminder]:
        doc = await self.reminders.find_one({"id": _require_id(reminder_id, "reminder_id")}, {"_id": 0})
        return MedicationReminder(**doc) if doc else None

    async def list_timing_backfill_page(self, cursor: Optional[str] = None, limit: int = 250) -> TimingBackfillPage:
        """One page ordered by reminder id, resuming strictly after ``cursor``."""
        page_size = max(1, int(limit))
        query = {}
        cursor = cursor.strip() if isinstance(cursor, str) else None
        if cursor:
            query["id"] = {"$gt": cursor}

        # One extra document tells us whether another page exists.
        docs = await self.reminders.find(query, {"_id": 0}).sort("id", 1).limit(page_size + 1).to_list(page_size + 1)
        has_more = len(docs) > page_size
        page_docs = docs[:page_size]

        items = []
        invalid_ids = []
        for doc in page_docs:
            try:
                items.append(MedicationReminder(**doc))
            except ValidationError as e:
                logger.warning(f"[MedReminders] Skipping malformed reminder {doc.get('id')}: {e}")
                invalid_ids.append(str(doc.get("id")))

        # Cursor follows raw documents; malformed ones are paged past, not retried.
        return TimingBackfillPage(
            items=items,
            invalid_ids=invalid_ids,
            processed_count=len(page_docs),
            has_more=has_more,
            next_cursor=page_docs[-1]["id"] if has_more and page_docs else None,
        )

    async def list_soft_deleted_by_cutoff(self, cutoff: datetime, limit: int) -> List[dict]:
        """``{id, deleted_at}`` for reminders soft-deleted on or before ``cutoff``, oldest first."""
        return await self.reminders.find(
            {"deleted_at": {"$lte": cutoff}},
            {"_id": 0, "id": 1, "deleted_at": 1},
        ).sort("deleted_at", 1).limit(max(1, int(limit))).to_list(None)

    async def get_user_timezone(self, user_id: str) -> Optional[str]:
        user = await self.db[USERS_COLLECTION].find_one(
            {"user_id": _require_id(user_id, "user_id")},
            {"_id": 0, "timezone": 1},
        )
        if not user:
            return None
        tz_name = user.get("timezone")
        return tz_name if isinstance(tz_name, str) and tz_name.strip() else None

    async def get_medication_state(self, medication_id: str) -> MedicationState:
        medication_id = _require_id(medication_id, "medication_id")
        med = await self.db[MEDICATIONS_COLLECTION].find_one(
            {"id": medication_id},
            {"_id": 0, "active": 1, "deleted_at": 1},
        )
        if med is None:
            return MedicationState(id=medication_id, exists=False, active=False)
        return MedicationState(
            id=medication_id,
            exists=True,
            active=med.get("active") is not False,
            deleted_at=med.get("deleted_at"),
        )

    async def acquire_reminder_send_lock(self, reminder_id: str, now: datetime, lock_until: datetime) -> bool:
        """
        Claim the right to send this reminder until ``lock_until``.

        A single conditional write: it only matches while no lock is held
        (``last_sent_lock_until`` missing, null, or not after ``now``), so two
        overlapping scans cannot both win.
        """
        result = await self.reminders.update_one(
            {
                "id": _require_id(reminder_id, "reminder_id"),
                "$or": [
                    {"last_sent_lock_until": None},
                    {"last_sent_lock_until": {"$lte": now}},
                ],
            },
            {"$set": {
                "last_sent_lock_until": lock_until,
                "last_sent_lock_at": now,
                "updated_at": now,
            }},
        )
        return result.matched_count == 1

    async def update_reminder_by_id(self, reminder_id: str, updates: dict) -> None:
        await self.reminders.update_one({"id": _require_id(reminder_id, "reminder_id")}, {"$set": updates})

    async def apply_reminder_updates(self, updates: List[ReminderUpdate]) -> int:
        """Apply ``(reminder_id, fields)`` pairs in chunks; completed chunks stay applied."""
        if not updates:
            return 0
        updated = 0
        for chunk in _chunks(list(updates), self.max_batch_size):
            operations = [UpdateOne({"id": reminder_id}, {"$set": fields}) for reminder_id, fields in chunk]
            await self.reminders.bulk_write(operations, ordered=False)
            updated += len(chunk)
        return updated

    async def delete_reminder_ids(self, reminder_ids: List[str]) -> int:
        if not reminder_ids:
            return 0
        deleted = 0
        for chunk in _chunks(list(reminder_ids), self.max_batch_size):
            result = await self.reminders.delete_many({"id": {"$in": chunk}})
            deleted += result.deleted_count
        return deleted

    async def list_medication_logs_by_user_and_logged_at_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[dict]:
        return await self.db[MEDICATION_LOGS_COLLECTION].find(
            {
                "user_id": _require_id(user_id, "user_id"),
                "logged_at": {"$gte": start, "$lte": end},
            },
            {"_id": 0},
        ).to_list(None)

    async def get_maintenance_state(self, key: str) -> dict:
        doc = await self.db[MAINTENANCE_STATE_COLLECTION].find_one({"id": key}, {"_id": 0})
        return doc or {}

    async def set_maintenance_state(self, key: str, fields: dict) -> None:
        await self.db[MAINTENANCE_STATE_COLLECTION].update_one(
            {"id": key},
            {"$set": fields},
            upsert=True,
        )
