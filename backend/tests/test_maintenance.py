"""
Maintenance job tests: resumable timing backfill, soft-delete retention purge
and the soft-delete defaults sweep.
"""
import asyncio
from datetime import timedelta

import pytest

from backfill import build_parser, parse_collections
from fakes import utc
from maintenance import (
    TIMING_BACKFILL_STATE_KEY,
    backfill_reminder_timing_policy,
    backfill_soft_delete_defaults,
    purge_soft_deleted_reminders,
)
from reminder_store import MAINTENANCE_STATE_COLLECTION, REMINDERS_COLLECTION, USERS_COLLECTION, MongoReminderStore

NOW = utc(2026, 3, 15, 12, 0)


def seed_reminders(db, *docs):
    for doc in docs:
        db[REMINDERS_COLLECTION].docs.append({
            "user_id": "user-1",
            "medication_id": "med-1",
            "medication_name": "Lisinopril",
            "times": ["08:00"],
            "enabled": True,
            **doc,
        })

def stored(db, reminder_id):
    return next(d for d in db[REMINDERS_COLLECTION].docs if d["id"] == reminder_id)


# ---------------------------------------------------------------------------
# Timing policy backfill
# ---------------------------------------------------------------------------

def test_timing_backfill_resumes_from_stored_cursor(fake_db):
    fake_db[USERS_COLLECTION].docs.append({"user_id": "user-1", "timezone": "America/Denver"})
    seed_reminders(
        fake_db,
        {"id": "rem-1"},
        {"id": "rem-2", "medication_name": "Prograf (tacrolimus)"},
        {"id": "rem-3", "timing_mode": "local", "criticality": "standard"},
        {"id": "rem-4"},
    )
    store = MongoReminderStore(fake_db)

    first = asyncio.run(backfill_reminder_timing_policy(store, page_size=2, now=NOW))
    state = asyncio.run(store.get_maintenance_state(TIMING_BACKFILL_STATE_KEY))
    second = asyncio.run(backfill_reminder_timing_policy(store, page_size=2, now=NOW))
    final_state = asyncio.run(store.get_maintenance_state(TIMING_BACKFILL_STATE_KEY))

    assert first["processed"] == 2
    assert first["updated"] == 2
    assert first["has_more"] is True
    assert state["cursor_reminder_id"] == "rem-2"
    assert state["completed_at"] is None

    assert second["processed"] == 2
    assert second["updated"] == 1
    assert second["has_more"] is False
    assert final_state["cursor_reminder_id"] is None
    assert final_state["completed_at"] == NOW

    assert stored(fake_db, "rem-1")["timing_mode"] == "local"
    assert stored(fake_db, "rem-2")["timing_mode"] == "anchor"
    assert stored(fake_db, "rem-2")["anchor_timezone"] == "America/Denver"
    assert stored(fake_db, "rem-2")["criticality"] == "time_sensitive"
    assert "updated_at" not in stored(fake_db, "rem-3")


def test_timing_backfill_is_idempotent(fake_db):
    seed_reminders(fake_db, {"id": "rem-1"})
    store = MongoReminderStore(fake_db)

    asyncio.run(backfill_reminder_timing_policy(store, page_size=10, now=NOW))
    again = asyncio.run(backfill_reminder_timing_policy(store, page_size=10, now=NOW))

    assert again["processed"] == 1
    assert again["updated"] == 0


def test_timing_backfill_dry_run_writes_nothing(fake_db):
    seed_reminders(fake_db, {"id": "rem-1"}, {"id": "rem-2"})
    store = MongoReminderStore(fake_db)

    result = asyncio.run(backfill_reminder_timing_policy(store, page_size=1, dry_run=True, now=NOW))

    assert result["needs_update"] == 1
    assert result["updated"] == 0
    assert result["dry_run"] is True
    assert "timing_mode" not in stored(fake_db, "rem-1")
    assert fake_db[MAINTENANCE_STATE_COLLECTION].docs == []


# ---------------------------------------------------------------------------
# Retention purge
# ---------------------------------------------------------------------------

def test_purge_respects_retention_window(fake_db):
    seed_reminders(
        fake_db,
        {"id": "rem-recent", "enabled": False, "deleted_at": utc(2026, 3, 1)},
        {"id": "rem-expired", "enabled": False, "deleted_at": utc(2025, 10, 1)},
        {"id": "rem-live"},
    )
    store = MongoReminderStore(fake_db)

    result = asyncio.run(purge_soft_deleted_reminders(store, retention_days=90, now=NOW))

    assert result == {
        "scanned": 1,
        "purged": 1,
        "has_more": False,
        "cutoff": (NOW - timedelta(days=90)).isoformat(),
    }
    assert sorted(d["id"] for d in fake_db[REMINDERS_COLLECTION].docs) == ["rem-live", "rem-recent"]


def test_purge_stops_at_max_pages(fake_db):
    seed_reminders(fake_db, *({"id": f"rem-{i}", "deleted_at": utc(2025, 1, 1 + i)} for i in range(5)))
    store = MongoReminderStore(fake_db)

    first = asyncio.run(purge_soft_deleted_reminders(store, page_size=2, max_pages=2, now=NOW))
    second = asyncio.run(purge_soft_deleted_reminders(store, page_size=2, max_pages=2, now=NOW))

    assert first["purged"] == 4
    assert first["has_more"] is True
    assert second["purged"] == 1
    assert second["has_more"] is False
    assert fake_db[REMINDERS_COLLECTION].docs == []


def test_purge_dry_run_and_explicit_cutoff(fake_db):
    seed_reminders(fake_db, {"id": "rem-1", "deleted_at": utc(2026, 3, 10)})
    store = MongoReminderStore(fake_db)

    result = asyncio.run(purge_soft_deleted_reminders(store, cutoff=utc(2026, 3, 11), dry_run=True, now=NOW))

    assert result["scanned"] == 1
    assert result["purged"] == 0
    assert len(fake_db[REMINDERS_COLLECTION].docs) == 1


def test_purge_rejects_negative_retention(fake_db):
    with pytest.raises(ValueError):
        asyncio.run(purge_soft_deleted_reminders(MongoReminderStore(fake_db), retention_days=-1))


# ---------------------------------------------------------------------------
# Soft-delete defaults
# ---------------------------------------------------------------------------

def seed_medications(db):
    db["medications"].docs.extend([
        {"_id": 1, "id": "med-1"},
        {"_id": 2, "id": "med-2", "deleted_at": None, "deleted_by": None},
        {"_id": 3, "id": "med-3", "deleted_at": None},
    ])


def test_soft_delete_defaults_dry_run(fake_db):
    seed_medications(fake_db)

    summaries = asyncio.run(backfill_soft_delete_defaults(fake_db, ["medications"], page_size=2, apply=False))

    assert summaries == [{"collection": "medications", "scanned": 3, "needs_update": 2, "updated": 0}]
    assert "deleted_at" not in fake_db["medications"].docs[0]


def test_soft_delete_defaults_apply(fake_db):
    seed_medications(fake_db)

    summaries = asyncio.run(backfill_soft_delete_defaults(fake_db, ["medications", "visits"], page_size=2, apply=True))

    assert summaries[0] == {"collection": "medications", "scanned": 3, "needs_update": 2, "updated": 2}
    assert summaries[1] == {"collection": "visits", "scanned": 0, "needs_update": 0, "updated": 0}
    for doc in fake_db["medications"].docs:
        assert doc["deleted_at"] is None
        assert doc["deleted_by"] is None


# ---------------------------------------------------------------------------
# Operator CLI
# ---------------------------------------------------------------------------

def test_cli_defaults_to_dry_run():
    args = build_parser().parse_args(["purge-reminders", "--retention-days", "30"])
    assert args.command == "purge-reminders"
    assert args.apply is False
    assert args.retention_days == 30


def test_cli_collections_parsing():
    args = build_parser().parse_args(["soft-delete-defaults", "--apply", "--collections", "medications, visits,,"])
    assert args.apply is True
    assert parse_collections(args.collections) == ["medications", "visits"]
    assert parse_collections("") is None
