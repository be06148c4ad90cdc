from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime, timezone, timedelta
import logging
import secrets
import uuid
from openai import AsyncOpenAI
from pymongo import ASCENDING

import config
from context_store import PATIENT_CONTEXTS_COLLECTION, MongoPatientContextStore
from delta_analyzer import DeltaAnalyzer, NudgeRecommendation, VisitSummaryForAnalysis
from maintenance import (
    DEFAULT_PURGE_PAGE_SIZE,
    DEFAULT_TIMING_PAGE_SIZE,
    backfill_reminder_timing_policy,
    purge_soft_deleted_reminders,
)
from notifications import WebhookReminderNotifier
from patient_context import TRACKING_TYPES, ContextWriteConflict, PatientContextService
from reminder_dispatch import ReminderDispatchEngine
from reminder_store import (
    MEDICATION_LOGS_COLLECTION,
    REMINDERS_COLLECTION,
    USERS_COLLECTION,
    MongoReminderStore,
)

# Initialize OpenAI client (lazy initialization)
openai_client = None

def get_openai_client():
    global openai_client
    if openai_client is None:
        # DeltaAnalyzer owns retries.
        openai_client = AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            timeout=config.DELTA_ANALYZER_TIMEOUT_SECONDS,
            max_retries=0,
        )
    return openai_client

# MongoDB connection
client = AsyncIOMotorClient(config.MONGO_URL, tz_aware=True)
db = client[config.DB_NAME]

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

NUDGE_URGENCY_OFFSETS = {
    "immediate": timedelta(0),
    "day1": timedelta(days=1),
    "day3": timedelta(days=3),
    "week1": timedelta(days=7),
}

# ==================== MODELS ====================

class ProcessedVisitRequest(VisitSummaryForAnalysis):
    user_id: str

class TrackingLogRequest(BaseModel):
    user_id: str
    tracking_type: str
    logged_at: Optional[datetime] = None

# ==================== DEPENDENCIES ====================

def get_db():
    return db

def get_context_service(database=Depends(get_db)) -> PatientContextService:
    return PatientContextService(MongoPatientContextStore(database[PATIENT_CONTEXTS_COLLECTION]))

def build_delta_analyzer(context_service: PatientContextService) -> DeltaAnalyzer:
    return DeltaAnalyzer(
        get_openai_client(),
        context_service,
        model=config.DELTA_ANALYZER_MODEL,
        timeout_seconds=config.DELTA_ANALYZER_TIMEOUT_SECONDS,
        max_attempts=config.DELTA_ANALYZER_MAX_ATTEMPTS,
        retry_delay_seconds=config.DELTA_ANALYZER_RETRY_DELAY_SECONDS,
    )

def get_delta_analyzer(context_service: PatientContextService = Depends(get_context_service)) -> DeltaAnalyzer:
    return build_delta_analyzer(context_service)

def get_reminder_store(database=Depends(get_db)) -> MongoReminderStore:
    return MongoReminderStore(database)

def get_dispatch_engine(store: MongoReminderStore = Depends(get_reminder_store)) -> ReminderDispatchEngine:
    return ReminderDispatchEngine(
        store,
        WebhookReminderNotifier(config.REMINDER_PUSH_WEBHOOK_URL),
        default_timezone=config.DEFAULT_TIMEZONE,
        window_minutes=config.REMINDER_DUE_WINDOW_MINUTES,
        lock_minutes=config.REMINDER_SEND_LOCK_MINUTES,
    )

async def require_internal_token(request: Request):
    """Internal triggers (visit pipeline, scheduler, operators) share one token."""
    expected = config.INTERNAL_API_TOKEN
    provided = request.headers.get("X-Internal-Token", "")
    if not expected or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid internal token")

# ==================== NUDGES ====================

def nudge_scheduled_for(urgency: str, now: datetime) -> datetime:
    return now + NUDGE_URGENCY_OFFSETS.get(urgency, NUDGE_URGENCY_OFFSETS["day1"])

async def persist_nudges(database, user_id: str, visit_id: str, nudges: List[NudgeRecommendation]) -> List[dict]:
    now = datetime.now(timezone.utc)
    docs = []
    for nudge in nudges:
        doc = {
            "id": f"nudge_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "visit_id": visit_id,
            **nudge.model_dump(),
            "status": "pending",
            "scheduled_for": nudge_scheduled_for(nudge.urgency, now),
            "created_at": now,
        }
        await database.nudges.insert_one(doc)
        docs.append({k: v for k, v in doc.items() if k != "_id"})
    return docs

# ==================== INTERNAL TRIGGERS ====================

@api_router.post("/internal/visits/processed", dependencies=[Depends(require_internal_token)])
async def visit_processed(
    payload: ProcessedVisitRequest,
    analyzer: DeltaAnalyzer = Depends(get_delta_analyzer),
    context_service: PatientContextService = Depends(get_context_service),
    database=Depends(get_db),
):
    visit = VisitSummaryForAnalysis(**payload.model_dump(exclude={"user_id"}))
    try:
        analyzed = await analyzer.analyze_and_update_context(payload.user_id, visit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ContextWriteConflict as e:
        logger.error(f"[VisitProcessed] {e}")
        raise HTTPException(status_code=409, detail="Patient context is being updated, retry later")

    if analyzed.already_processed:
        logger.info(f"[VisitProcessed] Visit {visit.visit_id} for user {payload.user_id} already processed")
        return {
            "visit_id": visit.visit_id,
            "nudges": [],
            "tracking_enabled": [],
            "reasoning": analyzed.analysis.reasoning,
            "used_fallback": False,
            "already_processed": True,
        }

    already_tracking = {t.type for t in analyzed.context.active_tracking}
    enabled = []
    for tracking_type in analyzed.analysis.context_updates.tracking_to_enable:
        if tracking_type in already_tracking or tracking_type in enabled:
            continue
        await context_service.enable_tracking(payload.user_id, tracking_type)
        enabled.append(tracking_type)

    nudges = await persist_nudges(database, payload.user_id, visit.visit_id, analyzed.analysis.nudges_to_create)
    logger.info(
        f"[VisitProcessed] Visit {visit.visit_id} for user {payload.user_id}: "
        f"{len(nudges)} nudges, tracking enabled={enabled}, fallback={analyzed.analysis.used_fallback}"
    )
    return {
        "visit_id": visit.visit_id,
        "nudges": nudges,
        "tracking_enabled": enabled,
        "reasoning": analyzed.analysis.reasoning,
        "used_fallback": analyzed.analysis.used_fallback,
        "already_processed": False,
    }

@api_router.post("/internal/tracking-logs", dependencies=[Depends(require_internal_token)])
async def tracking_logged(
    payload: TrackingLogRequest,
    context_service: PatientContextService = Depends(get_context_service),
):
    if payload.tracking_type not in TRACKING_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported tracking type: {payload.tracking_type}")
    try:
        updated = await context_service.record_tracking_log(payload.user_id, payload.tracking_type, payload.logged_at)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ContextWriteConflict as e:
        logger.error(f"[TrackingLog] {e}")
        raise HTTPException(status_code=409, detail="Patient context is being updated, retry later")
    return {"updated": updated}

@api_router.get("/internal/patients/{user_id}/context-summary", dependencies=[Depends(require_internal_token)])
async def context_summary(
    user_id: str,
    context_service: PatientContextService = Depends(get_context_service),
):
    context = await context_service.get_context(user_id)
    if not context:
        raise HTTPException(status_code=404, detail="No context for this patient")
    return context_service.summarize(context).model_dump()

@api_router.post("/internal/medication-reminders/process", dependencies=[Depends(require_internal_token)])
async def process_medication_reminders(engine: ReminderDispatchEngine = Depends(get_dispatch_engine)):
    stats = await engine.process_due_reminders()
    return stats.model_dump()

@api_router.post("/internal/medication-reminders/backfill-timing", dependencies=[Depends(require_internal_token)])
async def backfill_reminder_timing(
    page_size: int = DEFAULT_TIMING_PAGE_SIZE,
    dry_run: bool = False,
    store: MongoReminderStore = Depends(get_reminder_store),
):
    if page_size < 1:
        raise HTTPException(status_code=400, detail="page_size must be >= 1")
    return await backfill_reminder_timing_policy(
        store,
        page_size=page_size,
        dry_run=dry_run,
        default_timezone=config.DEFAULT_TIMEZONE,
    )

@api_router.post("/internal/medication-reminders/purge-deleted", dependencies=[Depends(require_internal_token)])
async def purge_deleted_reminders(
    retention_days: int = config.SOFT_DELETE_RETENTION_DAYS,
    page_size: int = DEFAULT_PURGE_PAGE_SIZE,
    store: MongoReminderStore = Depends(get_reminder_store),
):
    try:
        return await purge_soft_deleted_reminders(store, retention_days=retention_days, page_size=page_size)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@api_router.get("/")
async def root():
    return {"message": "Patient Context API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    await db[PATIENT_CONTEXTS_COLLECTION].create_index("user_id", unique=True)
    await db[REMINDERS_COLLECTION].create_index("id", unique=True)
    await db[REMINDERS_COLLECTION].create_index([("enabled", ASCENDING)])
    await db[REMINDERS_COLLECTION].create_index([("deleted_at", ASCENDING)])
    await db[USERS_COLLECTION].create_index("user_id")
    await db[MEDICATION_LOGS_COLLECTION].create_index([("user_id", ASCENDING), ("logged_at", ASCENDING)])
    await db.nudges.create_index([("user_id", ASCENDING), ("scheduled_for", ASCENDING)])
    logger.info("[Startup] Indexes ensured")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
