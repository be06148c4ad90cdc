"""
Medication reminder dispatch.

Each scan walks the enabled reminders, works out which wall-clock slot (if
any) is due in the reminder's authoritative time zone, and sends at most one
notification per reminder and slot. All coordination state lives on the
reminder documents; overlapping scans are serialized per reminder by the
send lock in ``MongoReminderStore.acquire_reminder_send_lock``.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytz
from pydantic import BaseModel

from reminder_store import MedicationReminder, MongoReminderStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Chicago"
SYSTEM_ACTOR = "system:medication-reminder-processor"
HANDLED_LOG_ACTIONS = {"taken", "skipped"}

TIMING_MODES = {"local", "anchor"}
CRITICALITIES = {"standard", "time_sensitive"}

# Doses that lose efficacy or become unsafe when shifted by travel stay
# pinned to the zone they were prescribed in.
TIME_SENSITIVE_MEDICATION_KEYWORDS = [
    "tacrolimus", "prograf", "envarsus", "cyclosporine", "sandimmune", "neoral",
    "mycophenolate", "cellcept", "myfortic", "sirolimus", "rapamune", "everolimus",
    "insulin", "levodopa", "carbidopa", "sinemet", "rytary", "pyridostigmine", "mestinon",
    "dolutegravir", "bictegravir", "biktarvy", "raltegravir", "darunavir",
]


class TimingPolicy(BaseModel):
    timing_mode: str
    anchor_timezone: Optional[str] = None
    criticality: str
    evaluation_timezone: str

class DispatchStats(BaseModel):
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0


# ==================== TIMING ====================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def is_valid_timezone(name: Optional[str]) -> bool:
    if not name or not isinstance(name, str):
        return False
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return False
    return True

def parse_hhmm(value: str) -> Optional[Tuple[int, int]]:
    match = re.match(r"^(\d{1,2}):(\d{2})$", (value or "").strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute

def is_time_sensitive_medication(medication_name: str) -> bool:
    lowered = (medication_name or "").lower()
    return any(k in lowered for k in TIME_SENSITIVE_MEDICATION_KEYWORDS)

def resolve_reminder_timing_policy(
    medication_name: str,
    user_timezone: Optional[str],
    timing_mode: Optional[str] = None,
    anchor_timezone: Optional[str] = None,
    criticality: Optional[str] = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> TimingPolicy:
    """Fill in whatever timing fields a reminder is missing and pick the zone to evaluate it in."""
    current_zone = user_timezone if is_valid_timezone(user_timezone) else default_timezone

    if criticality not in CRITICALITIES:
        criticality = "time_sensitive" if is_time_sensitive_medication(medication_name) else "standard"
    if timing_mode not in TIMING_MODES:
        timing_mode = "anchor" if criticality == "time_sensitive" else "local"

    if timing_mode == "anchor":
        anchor = anchor_timezone if is_valid_timezone(anchor_timezone) else current_zone
        return TimingPolicy(
            timing_mode="anchor",
            anchor_timezone=anchor,
            criticality=criticality,
            evaluation_timezone=anchor,
        )
    return TimingPolicy(
        timing_mode="local",
        anchor_timezone=None,
        criticality=criticality,
        evaluation_timezone=current_zone,
    )

def timing_policy_updates(reminder: MedicationReminder, policy: TimingPolicy) -> dict:
    """Fields to persist so the reminder carries its resolved policy; empty when already complete."""
    updates = {}
    if reminder.timing_mode != policy.timing_mode:
        updates["timing_mode"] = policy.timing_mode
    if reminder.criticality != policy.criticality:
        updates["criticality"] = policy.criticality
    if policy.timing_mode == "anchor" and reminder.anchor_timezone != policy.anchor_timezone:
        updates["anchor_timezone"] = policy.anchor_timezone
    return updates

def find_due_slot(times: List[str], timezone_name: str, now: datetime, window_minutes: int = 7) -> Optional[str]:
    """Return the HH:MM slot within ``window_minutes`` of local wall-clock time, if any."""
    local_now = now.astimezone(pytz.timezone(timezone_name))
    current_minutes = local_now.hour * 60 + local_now.minute
    for value in times:
        parsed = parse_hhmm(value)
        if not parsed:
            continue
        slot_minutes = parsed[0] * 60 + parsed[1]
        diff = abs(slot_minutes - current_minutes)
        if min(diff, 1440 - diff) <= window_minutes:
            return f"{parsed[0]:02d}:{parsed[1]:02d}"
    return None

def local_day_bounds(timezone_name: str, now: datetime) -> Tuple[datetime, datetime]:
    """UTC instants bounding the local calendar day that contains ``now``."""
    tz = pytz.timezone(timezone_name)
    local_date = now.astimezone(tz).date()
    next_date = local_date + timedelta(days=1)
    start = tz.localize(datetime(local_date.year, local_date.month, local_date.day))
    end = tz.localize(datetime(next_date.year, next_date.month, next_date.day)) - timedelta(microseconds=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ==================== ENGINE ====================

class ReminderDispatchEngine:
    def __init__(
        self,
        store: MongoReminderStore,
        notifier,
        default_timezone: str = DEFAULT_TIMEZONE,
        window_minutes: int = 7,
        lock_minutes: int = 30,
    ):
        self.store = store
        self.notifier = notifier
        self.default_timezone = default_timezone
        self.window_minutes = window_minutes
        self.lock_minutes = lock_minutes

    async def _slot_already_logged(
        self,
        reminder: MedicationReminder,
        slot: str,
        evaluation_timezone: str,
        now: datetime,
    ) -> bool:
        start, end = local_day_bounds(evaluation_timezone, now)
        logs = await self.store.list_medication_logs_by_user_and_logged_at_range(reminder.user_id, start, end)
        return any(
            log.get("medication_id") == reminder.medication_id
            and log.get("scheduled_time") == slot
            and log.get("action") in HANDLED_LOG_ACTIONS
            for log in logs
        )

    async def _still_enabled(self, reminder_id: str) -> bool:
        # The scan list can be minutes old by the time the lock is won.
        current = await self.store.get_reminder(reminder_id)
        return current is not None and current.enabled and current.deleted_at is None

    async def _soft_disable(self, reminder: MedicationReminder, now: datetime) -> None:
        await self.store.update_reminder_by_id(reminder.id, {
            "enabled": False,
            "deleted_at": now,
            "deleted_by": SYSTEM_ACTOR,
            "updated_at": now,
        })
        logger.info(f"[MedReminders] Soft-disabled orphaned reminder {reminder.id} (medication {reminder.medication_id} missing)")

    async def _process_one(
        self,
        reminder: MedicationReminder,
        now: datetime,
        stats: DispatchStats,
        updates: List[Tuple[str, dict]],
    ) -> None:
        if not reminder.enabled or reminder.deleted_at is not None:
            return

        user_timezone = await self.store.get_user_timezone(reminder.user_id)
        policy = resolve_reminder_timing_policy(
            reminder.medication_name,
            user_timezone,
            timing_mode=reminder.timing_mode,
            anchor_timezone=reminder.anchor_timezone,
            criticality=reminder.criticality,
            default_timezone=self.default_timezone,
        )
        policy_fields = timing_policy_updates(reminder, policy)

        slot = find_due_slot(reminder.times, policy.evaluation_timezone, now, self.window_minutes)
        if not slot:
            if policy_fields:
                updates.append((reminder.id, policy_fields))
            return

        stats.processed += 1
        skip_reason = None
        lock_window = timedelta(minutes=self.lock_minutes)

        medication = await self.store.get_medication_state(reminder.medication_id)
        if not medication.exists:
            await self._soft_disable(reminder, now)
            stats.skipped += 1
            return
        if not medication.dispatchable:
            skip_reason = "medication inactive"
        elif reminder.last_sent_at and _as_utc(reminder.last_sent_at) > now - lock_window:
            skip_reason = "recently sent"
        elif await self._slot_already_logged(reminder, slot, policy.evaluation_timezone, now):
            skip_reason = f"slot {slot} already logged"
        elif not await self.store.acquire_reminder_send_lock(reminder.id, now, now + lock_window):
            skip_reason = "send lock held"
        elif not await self._still_enabled(reminder.id):
            skip_reason = "disabled during scan"

        if skip_reason:
            logger.info(f"[MedReminders] Skipping {reminder.id}: {skip_reason}")
            stats.skipped += 1
            if policy_fields:
                updates.append((reminder.id, policy_fields))
            return

        delivered = await self.notifier.send_medication_reminder(
            reminder,
            scheduled_time=slot,
            evaluation_timezone=policy.evaluation_timezone,
        )
        if delivered:
            stats.sent += 1
        updates.append((reminder.id, {**policy_fields, "last_sent_at": now}))
        logger.info(
            f"[MedReminders] Processed {reminder.id} slot {slot} in {policy.evaluation_timezone} "
            f"(delivered={delivered})"
        )

    async def process_due_reminders(self, now: Optional[datetime] = None) -> DispatchStats:
        now = _as_utc(now or utc_now())
        stats = DispatchStats()
        updates: List[Tuple[str, dict]] = []

        docs = await self.store.list_enabled_reminders()
        logger.info(f"[MedReminders] Scanning {len(docs)} enabled reminders at {now.isoformat()}")

        for doc in docs:
            try:
                reminder = MedicationReminder(**doc)
                await self._process_one(reminder, now, stats, updates)
            except Exception:
                logger.exception(f"[MedReminders] Error processing reminder {doc.get('id')}")
                stats.errors += 1

        if updates:
            await self.store.apply_reminder_updates(updates)

        logger.info(
            f"[MedReminders] Processing complete: processed={stats.processed} sent={stats.sent} "
            f"skipped={stats.skipped} errors={stats.errors}"
        )
        return stats
