"""
Storage adapter for the per-patient medical context document.

One document per patient in the ``patient_contexts`` collection, keyed by
``user_id``. The accumulator owns the document shape; this module only knows
how to read and write it.
"""
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument

PATIENT_CONTEXTS_COLLECTION = "patient_contexts"


def _require_user_id(user_id: str) -> str:
    if not user_id or not str(user_id).strip():
        raise ValueError("user_id is required for patient context storage")
    return str(user_id).strip()


def _version_filter(user_id: str, expected_version: int) -> dict:
    if expected_version == 0:
        # Documents written before versioning have no stamp at all.
        return {"user_id": user_id, "version": {"$in": [0, None]}}
    return {"user_id": user_id, "version": expected_version}


class MongoPatientContextStore:
    def __init__(self, collection):
        self.collection = collection

    async def get(self, user_id: str) -> Optional[dict]:
        user_id = _require_user_id(user_id)
        return await self.collection.find_one({"user_id": user_id}, {"_id": 0})

    async def create_if_absent(self, user_id: str, document: dict) -> dict:
        """Insert ``document`` unless a context already exists; return the stored one."""
        user_id = _require_user_id(user_id)
        stored = await self.collection.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {**document, "user_id": user_id}},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return stored

    async def set(self, user_id: str, fields: dict, merge: bool = True) -> None:
        user_id = _require_user_id(user_id)
        if merge:
            await self.collection.update_one(
                {"user_id": user_id},
                {"$set": {k: v for k, v in fields.items() if k != "user_id"}},
                upsert=True,
            )
            return
        await self.collection.replace_one(
            {"user_id": user_id},
            {**fields, "user_id": user_id},
            upsert=True,
        )

    async def update(self, user_id: str, fields: dict) -> bool:
        user_id = _require_user_id(user_id)
        result = await self.collection.update_one(
            {"user_id": user_id},
            {"$set": fields, "$inc": {"version": 1}},
        )
        return result.matched_count == 1

    async def update_if_version(self, user_id: str, expected_version: int, fields: dict) -> bool:
        """Write ``fields`` only if nobody else wrote since ``expected_version`` was read."""
        user_id = _require_user_id(user_id)
        update = {k: v for k, v in fields.items() if k not in ("user_id", "version")}
        update["version"] = expected_version + 1
        result = await self.collection.update_one(
            _version_filter(user_id, expected_version),
            {"$set": update},
        )
        return result.matched_count == 1

    async def push_tracking(self, user_id: str, entry: dict, now: datetime) -> bool:
        user_id = _require_user_id(user_id)
        result = await self.collection.update_one(
            {"user_id": user_id},
            {
                "$push": {"active_tracking": entry},
                "$set": {"updated_at": now},
                "$inc": {"version": 1},
            },
        )
        return result.matched_count == 1
