"""
Patient medical context accumulator.

Keeps one longitudinal record per patient (conditions, medications, tracking
opt-ins and a short visit history) so each new visit can be diffed against
what is already known. The record is internal: it feeds nudge generation and
is never shown to the patient as-is.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from context_store import MongoPatientContextStore

logger = logging.getLogger(__name__)

MAX_VISIT_HISTORY = 10
MAX_MERGE_ATTEMPTS = 5
RECENT_LOG_WINDOW = timedelta(hours=24)

TRACKING_TYPES = ("bp", "glucose", "weight", "symptoms")

ConditionStatus = Literal["active", "resolved", "monitoring"]
TrackingType = Literal["bp", "glucose", "weight", "symptoms"]

CONDITION_SYNONYMS = {
    "hypertension": "hypertension",
    "htn": "hypertension",
    "high blood pressure": "hypertension",
    "elevated blood pressure": "hypertension",

    "diabetes": "diabetes",
    "type 2 diabetes": "diabetes",
    "type 1 diabetes": "diabetes",
    "dm": "diabetes",
    "t2dm": "diabetes",

    "heart failure": "heart_failure",
    "chf": "heart_failure",
    "congestive heart failure": "heart_failure",

    "atrial fibrillation": "afib",
    "afib": "afib",
    "a-fib": "afib",

    "copd": "copd",
    "emphysema": "copd",
    "chronic bronchitis": "copd",
}


class ContextWriteConflict(RuntimeError):
    """Raised when the versioned context write keeps losing to concurrent writers."""


# ==================== MODELS ====================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class PatientCondition(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    diagnosed_at: datetime
    source_visit_id: str
    status: ConditionStatus = "active"
    notes: Optional[str] = None

class PatientMedication(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    dose: Optional[str] = None
    frequency: Optional[str] = None
    started_at: datetime
    for_condition: Optional[str] = None
    active: bool = True

class ActiveTracking(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: TrackingType
    enabled_at: datetime
    source_condition_id: Optional[str] = None
    last_logged_at: Optional[datetime] = None

class VisitHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    visit_id: str
    visit_date: datetime
    diagnoses_discussed: List[str] = []
    medications_started: List[str] = []
    medications_changed: List[str] = []
    medications_stopped: List[str] = []

class PatientMedicalContext(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_id: str
    conditions: List[PatientCondition] = []
    medications: List[PatientMedication] = []
    active_tracking: List[ActiveTracking] = []
    visit_history: List[VisitHistoryEntry] = []
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

class StartedMedication(BaseModel):
    name: str
    dose: Optional[str] = None
    frequency: Optional[str] = None

class ChangedMedication(BaseModel):
    name: str
    change: Optional[str] = None

class VisitContextUpdate(BaseModel):
    visit_id: str
    visit_date: datetime
    diagnoses: List[str] = []
    medications_started: List[StartedMedication] = []
    medications_changed: List[ChangedMedication] = []
    medications_stopped: List[str] = []

class ContextSummary(BaseModel):
    existing_conditions: List[str] = []
    current_medications: List[str] = []
    active_tracking: List[str] = []
    recently_logged: List[str] = []
    condition_ages: Dict[str, str] = {}


# ==================== PURE HELPERS ====================

def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def normalize_condition_id(diagnosis: str) -> str:
    """Map a diagnosis string onto a canonical condition slug."""
    lowered = (diagnosis or "").strip().lower()
    if lowered in CONDITION_SYNONYMS:
        return CONDITION_SYNONYMS[lowered]
    if lowered:
        for key, condition_id in CONDITION_SYNONYMS.items():
            if key in lowered or lowered in key:
                return condition_id
    return re.sub(r"[^a-z0-9]+", "_", lowered).strip("_")

def collapse_tracking(entries: List[ActiveTracking]) -> List[ActiveTracking]:
    """One entry per tracking type, first-enabled order, latest log wins."""
    by_type: Dict[str, ActiveTracking] = {}
    for entry in entries:
        current = by_type.get(entry.type)
        if current is None:
            by_type[entry.type] = entry.model_copy()
            continue
        if as_utc(entry.enabled_at) < as_utc(current.enabled_at):
            current.enabled_at = entry.enabled_at
        if current.source_condition_id is None and entry.source_condition_id:
            current.source_condition_id = entry.source_condition_id
        if entry.last_logged_at and (
            current.last_logged_at is None
            or as_utc(entry.last_logged_at) > as_utc(current.last_logged_at)
        ):
            current.last_logged_at = entry.last_logged_at
    return list(by_type.values())

def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"

def condition_age_label(diagnosed_at: datetime, now: datetime) -> str:
    days_ago = max(0, (as_utc(now) - as_utc(diagnosed_at)).days)
    if days_ago == 0:
        return "today"
    if days_ago < 7:
        return _plural(days_ago, "day")
    if days_ago < 30:
        return _plural(days_ago // 7, "week")
    return _plural(days_ago // 30, "month")

def summarize_context(context: PatientMedicalContext, now: Optional[datetime] = None) -> ContextSummary:
    """AI-facing projection of the context. Does not touch the input."""
    now = as_utc(now or utc_now())
    active_conditions = [c for c in context.conditions if c.status == "active"]
    tracking = collapse_tracking(context.active_tracking)
    return ContextSummary(
        existing_conditions=[c.name for c in active_conditions],
        current_medications=[
            " ".join(part for part in (m.name, m.dose, m.frequency) if part)
            for m in context.medications
            if m.active
        ],
        active_tracking=[t.type for t in tracking],
        recently_logged=[
            t.type for t in tracking
            if t.last_logged_at and as_utc(t.last_logged_at) > now - RECENT_LOG_WINDOW
        ],
        condition_ages={c.id: condition_age_label(c.diagnosed_at, now) for c in active_conditions},
    )

def new_context(user_id: str, now: datetime) -> PatientMedicalContext:
    return PatientMedicalContext(user_id=user_id, created_at=now, updated_at=now)

def apply_visit_update(
    context: PatientMedicalContext,
    update: VisitContextUpdate,
    now: datetime,
) -> PatientMedicalContext:
    """Return a copy of ``context`` with ``update`` folded in."""
    merged = context.model_copy(deep=True)
    visit_date = as_utc(update.visit_date)

    known_ids = {c.id for c in merged.conditions}
    for diagnosis in update.diagnoses:
        condition_id = normalize_condition_id(diagnosis)
        if not condition_id or condition_id in known_ids:
            continue
        merged.conditions.append(PatientCondition(
            id=condition_id,
            name=diagnosis.strip(),
            diagnosed_at=visit_date,
            source_visit_id=update.visit_id,
            status="active",
        ))
        known_ids.add(condition_id)

    for med in update.medications_started:
        merged.medications.append(PatientMedication(
            id=f"{update.visit_id}_{med.name}",
            name=med.name,
            dose=med.dose,
            frequency=med.frequency,
            started_at=visit_date,
            active=True,
        ))

    for med_name in update.medications_stopped:
        target = (med_name or "").strip().lower()
        for med in merged.medications:
            if med.active and med.name.lower() == target:
                med.active = False
                break

    merged.visit_history.append(VisitHistoryEntry(
        visit_id=update.visit_id,
        visit_date=visit_date,
        diagnoses_discussed=list(update.diagnoses),
        medications_started=[m.name for m in update.medications_started],
        medications_changed=[m.name for m in update.medications_changed],
        medications_stopped=list(update.medications_stopped),
    ))
    if len(merged.visit_history) > MAX_VISIT_HISTORY:
        merged.visit_history = merged.visit_history[-MAX_VISIT_HISTORY:]

    merged.updated_at = now
    return merged


# ==================== SERVICE ====================

class PatientContextService:
    def __init__(self, store: MongoPatientContextStore, clock=utc_now):
        self.store = store
        self.clock = clock

    async def get_context(self, user_id: str) -> Optional[PatientMedicalContext]:
        doc = await self.store.get(user_id)
        if not doc:
            return None
        return PatientMedicalContext(**doc)

    async def get_or_create(self, user_id: str) -> PatientMedicalContext:
        existing = await self.get_context(user_id)
        if existing:
            return existing
        context = new_context(user_id, self.clock())
        stored = await self.store.create_if_absent(user_id, context.model_dump())
        logger.info(f"[PatientContext] Created context for user {user_id}")
        return PatientMedicalContext(**stored)

    async def merge_visit(self, user_id: str, update: VisitContextUpdate) -> PatientMedicalContext:
        if not update.visit_id or not update.visit_id.strip():
            raise ValueError("visit_id is required to merge a visit into patient context")

        for attempt in range(1, MAX_MERGE_ATTEMPTS + 1):
            context = await self.get_or_create(user_id)
            if any(v.visit_id == update.visit_id for v in context.visit_history):
                logger.info(f"[PatientContext] Visit {update.visit_id} already merged for user {user_id}")
                return context

            merged = apply_visit_update(context, update, self.clock())
            written = await self.store.update_if_version(
                user_id,
                context.version,
                merged.model_dump(include={"conditions", "medications", "visit_history", "updated_at"}),
            )
            if written:
                merged.version = context.version + 1
                logger.info(
                    f"[PatientContext] Updated context for user {user_id} "
                    f"(diagnoses={len(update.diagnoses)}, new_meds={len(update.medications_started)})"
                )
                return merged
            logger.warning(
                f"[PatientContext] Concurrent write on context for user {user_id}, "
                f"retrying merge (attempt {attempt}/{MAX_MERGE_ATTEMPTS})"
            )

        raise ContextWriteConflict(
            f"Could not merge visit {update.visit_id} for user {user_id} after {MAX_MERGE_ATTEMPTS} attempts"
        )

    async def enable_tracking(
        self,
        user_id: str,
        tracking_type: str,
        source_condition_id: Optional[str] = None,
    ) -> None:
        if tracking_type not in TRACKING_TYPES:
            raise ValueError(f"Unsupported tracking type: {tracking_type}")
        now = self.clock()
        entry = ActiveTracking(type=tracking_type, enabled_at=now, source_condition_id=source_condition_id)
        pushed = await self.store.push_tracking(user_id, entry.model_dump(), now)
        if not pushed:
            await self.get_or_create(user_id)
            await self.store.push_tracking(user_id, entry.model_dump(), now)
        logger.info(f"[PatientContext] Enabled {tracking_type} tracking for user {user_id}")

    async def record_tracking_log(
        self,
        user_id: str,
        tracking_type: str,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or self.clock()
        for _ in range(MAX_MERGE_ATTEMPTS):
            context = await self.get_context(user_id)
            if not context:
                return False
            entries = [t for t in context.active_tracking if t.type == tracking_type]
            if not entries:
                return False
            for entry in entries:
                entry.last_logged_at = now
            written = await self.store.update_if_version(user_id, context.version, {
                "active_tracking": [t.model_dump() for t in context.active_tracking],
                "updated_at": now,
            })
            if written:
                return True
        raise ContextWriteConflict(f"Could not record {tracking_type} log for user {user_id}")

    def summarize(self, context: PatientMedicalContext, now: Optional[datetime] = None) -> ContextSummary:
        return summarize_context(context, now or self.clock())
