"""
Delta analyzer: decide which proactive nudges a finished visit deserves.

The generative model proposes nudges from the patient's existing context and
this visit's changes. Its output is untrusted: every response goes through
the normalization functions below, which map any payload to a bounded, valid
result. When the model cannot be reached (or answers with garbage) a
rule-based analyzer takes over, so callers always get a result.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Iterable, List, Literal, Optional

import openai
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from patient_context import (
    TRACKING_TYPES,
    ChangedMedication,
    ContextSummary,
    PatientContextService,
    PatientMedicalContext,
    StartedMedication,
    VisitContextUpdate,
    normalize_condition_id,
)

logger = logging.getLogger(__name__)

MAX_NUDGES_PER_VISIT = 2

NUDGE_TYPES = ("introduction", "medication_checkin", "condition_tracking", "followup", "insight")
NUDGE_PRIORITY = ["introduction", "medication_checkin", "condition_tracking", "followup"]
NUDGE_URGENCIES = ("immediate", "day1", "day3", "week1")
DEFAULT_URGENCY = "day1"
DEFAULT_REASON = "Recommended by AI"

NudgeType = Literal["introduction", "medication_checkin", "condition_tracking", "followup", "insight"]
NudgeUrgency = Literal["immediate", "day1", "day3", "week1"]

TRACKING_MEDICATION_KEYWORDS = [
    ("bp", ["lisinopril", "losartan", "amlodipine", "metoprolol", "hydrochlorothiazide", "hctz"]),
    ("glucose", ["metformin", "glipizide", "sitagliptin", "empagliflozin", "insulin", "januvia", "jardiance"]),
    ("weight", ["ozempic", "wegovy", "mounjaro", "semaglutide", "tirzepatide"]),
]

DELTA_ANALYSIS_PROMPT = """You are analyzing a patient visit to determine what health nudges to create.

CORE PHILOSOPHY: Less is more. Only create nudges for ESSENTIAL follow-up. Do NOT overwhelm the patient.

STRICT RULES:
1. MAX 2 NUDGES per visit - prioritize what matters most
2. For NEW diagnoses: create ONE "introduction" nudge that mentions ALL new conditions together
3. For NEW diagnoses: do NOT create condition_tracking nudges yet - wait for day3/week1
4. For CHANGED medications: create ONE "followup" nudge about the change
5. For EXISTING conditions with new meds: can create condition_tracking for that condition
6. 24-HOUR COOL-DOWN: Do NOT create tracking nudges for types already logged today (see recently logged)
7. ONBOARDING TIMELINE: For conditions diagnosed less than 7 days ago, no tracking nudges - just education
8. Never provide medical advice or dosage recommendations
9. When in doubt, create FEWER nudges

DECISION TREE:
1. Are there NEW conditions not in existing context?
   -> Create ONE introduction nudge (immediate) mentioning ALL new conditions
   -> Add new conditions to tracking_to_enable, but schedule tracking for week1
2. Are there CHANGED medications for EXISTING conditions (>7 days old)?
   -> Create ONE medication_checkin or condition_tracking nudge (day1-day3)
   -> But SKIP if that tracking type was logged today (in recently logged)
3. Nothing new or changed, or patient already logged today?
   -> Return empty arrays

Return ONLY valid JSON:
{
  "nudges_to_create": [
    {
      "type": "introduction" | "medication_checkin" | "condition_tracking" | "followup",
      "reason": "Brief reason why this nudge",
      "condition_id": "optional - hypertension|diabetes|heart_failure|copd|afib|anticoagulation",
      "medication_name": "optional - medication name if relevant",
      "tracking_type": "bp" | "glucose" | "weight" | "symptoms" | null,
      "urgency": "immediate" | "day1" | "day3" | "week1",
      "is_new_diagnosis": true | false
    }
  ],
  "context_updates": {
    "new_conditions": ["new_condition_1"],
    "tracking_to_enable": ["bp", "glucose"]
  },
  "reasoning": "Brief explanation of analysis"
}

REMEMBER: Maximum 2 nudges. Respect 24h cool-down. Prioritize quality over quantity."""


class NudgeRecommendation(BaseModel):
    type: NudgeType
    reason: str = DEFAULT_REASON
    condition_id: Optional[str] = None
    medication_name: Optional[str] = None
    tracking_type: Optional[str] = None
    urgency: NudgeUrgency = DEFAULT_URGENCY
    is_new_diagnosis: bool = False

class ContextUpdateRecommendation(BaseModel):
    new_conditions: List[str] = []
    tracking_to_enable: List[str] = []

class DeltaAnalysisResult(BaseModel):
    nudges_to_create: List[NudgeRecommendation] = []
    context_updates: ContextUpdateRecommendation = Field(default_factory=ContextUpdateRecommendation)
    reasoning: str = ""
    used_fallback: bool = False

class VisitSummaryForAnalysis(BaseModel):
    visit_id: str
    visit_date: datetime
    summary_text: str = ""
    diagnoses: List[str] = []
    medications_started: List[StartedMedication] = []
    medications_changed: List[ChangedMedication] = []
    medications_stopped: List[str] = []

    def to_context_update(self) -> VisitContextUpdate:
        return VisitContextUpdate(
            visit_id=self.visit_id,
            visit_date=self.visit_date,
            diagnoses=self.diagnoses,
            medications_started=self.medications_started,
            medications_changed=self.medications_changed,
            medications_stopped=self.medications_stopped,
        )

class AnalyzedVisit(BaseModel):
    analysis: DeltaAnalysisResult
    context: PatientMedicalContext
    already_processed: bool = False


class MalformedAnalysisError(ValueError):
    """Model answered, but not with a JSON object."""


# ==================== NORMALIZATION ====================

def _optional_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None

def normalize_nudge(raw: Any) -> Optional[NudgeRecommendation]:
    """Turn one candidate from the model into a valid recommendation, or drop it."""
    if not isinstance(raw, dict):
        return None
    nudge_type = raw.get("type")
    if nudge_type not in NUDGE_TYPES:
        return None
    urgency = raw.get("urgency")
    tracking_type = raw.get("tracking_type")
    return NudgeRecommendation(
        type=nudge_type,
        reason=_optional_str(raw.get("reason")) or DEFAULT_REASON,
        condition_id=_optional_str(raw.get("condition_id")),
        medication_name=_optional_str(raw.get("medication_name")),
        tracking_type=tracking_type if tracking_type in TRACKING_TYPES else None,
        urgency=urgency if urgency in NUDGE_URGENCIES else DEFAULT_URGENCY,
        is_new_diagnosis=raw.get("is_new_diagnosis") is True,
    )

def _priority(nudge: NudgeRecommendation) -> int:
    if nudge.type in NUDGE_PRIORITY:
        return NUDGE_PRIORITY.index(nudge.type)
    return len(NUDGE_PRIORITY)

def clamp_nudges(nudges: List[NudgeRecommendation]) -> List[NudgeRecommendation]:
    clamped = list(nudges)
    if len(clamped) > MAX_NUDGES_PER_VISIT:
        original_count = len(clamped)
        clamped = sorted(clamped, key=_priority)[:MAX_NUDGES_PER_VISIT]
        logger.info(f"[DeltaAnalyzer] Limited nudges to {MAX_NUDGES_PER_VISIT} (was {original_count})")

    # Brand-new diagnoses get education first; tracking waits.
    return [
        n.model_copy(update={"urgency": "day3"})
        if n.type == "condition_tracking" and n.is_new_diagnosis and n.urgency == "immediate"
        else n
        for n in clamped
    ]

def normalize_context_updates(raw: Any) -> ContextUpdateRecommendation:
    if not isinstance(raw, dict):
        return ContextUpdateRecommendation()
    new_conditions = raw.get("new_conditions")
    tracking = raw.get("tracking_to_enable")
    return ContextUpdateRecommendation(
        new_conditions=[c for c in new_conditions if isinstance(c, str)] if isinstance(new_conditions, list) else [],
        tracking_to_enable=[t for t in tracking if t in TRACKING_TYPES] if isinstance(tracking, list) else [],
    )

def normalize_analysis(raw: Any) -> DeltaAnalysisResult:
    if not isinstance(raw, dict):
        raw = {}
    candidates = raw.get("nudges_to_create")
    nudges = []
    if isinstance(candidates, list):
        for candidate in candidates:
            nudge = normalize_nudge(candidate)
            if nudge:
                nudges.append(nudge)
    reasoning = raw.get("reasoning")
    return DeltaAnalysisResult(
        nudges_to_create=clamp_nudges(nudges),
        context_updates=normalize_context_updates(raw.get("context_updates")),
        reasoning=reasoning if isinstance(reasoning, str) else "",
    )

def parse_analysis_content(content: Optional[str]) -> DeltaAnalysisResult:
    raw_text = (content or "").strip()
    if not raw_text:
        raise MalformedAnalysisError("Empty response from generative backend")
    try:
        parsed = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise MalformedAnalysisError(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedAnalysisError("Response JSON is not an object")
    return normalize_analysis(parsed)


# ==================== FALLBACK ====================

def infer_tracking_from_medication(medication_name: str) -> Optional[str]:
    lowered = (medication_name or "").lower()
    for tracking_type, keywords in TRACKING_MEDICATION_KEYWORDS:
        if any(k in lowered for k in keywords):
            return tracking_type
    return None

def find_new_diagnoses(diagnoses: Iterable[str], existing_conditions: Iterable[str]) -> List[str]:
    # Bidirectional containment; short names like "DM" can over-match.
    existing = [c.lower() for c in existing_conditions]
    new = []
    for diagnosis in diagnoses:
        lowered = diagnosis.lower()
        if not any(c in lowered or lowered in c for c in existing):
            new.append(diagnosis)
    return new

def fallback_analysis(summary: ContextSummary, visit: VisitSummaryForAnalysis) -> DeltaAnalysisResult:
    nudges: List[NudgeRecommendation] = []
    tracking_to_enable: List[str] = []

    new_diagnoses = find_new_diagnoses(visit.diagnoses, summary.existing_conditions)
    if new_diagnoses:
        nudges.append(NudgeRecommendation(
            type="introduction",
            reason="New diagnosis discussed",
            condition_id=normalize_condition_id(new_diagnoses[0]),
            urgency="immediate",
            is_new_diagnosis=True,
        ))

    for med in visit.medications_started:
        tracking_type = infer_tracking_from_medication(med.name)
        if (
            tracking_type
            and tracking_type not in summary.active_tracking
            and tracking_type not in tracking_to_enable
        ):
            tracking_to_enable.append(tracking_type)
        if len(nudges) < MAX_NUDGES_PER_VISIT:
            nudges.append(NudgeRecommendation(
                type="medication_checkin",
                reason="New medication started",
                medication_name=med.name,
                tracking_type=tracking_type,
                urgency="day1",
            ))

    return DeltaAnalysisResult(
        nudges_to_create=nudges,
        context_updates=ContextUpdateRecommendation(
            new_conditions=new_diagnoses,
            tracking_to_enable=tracking_to_enable,
        ),
        reasoning="Fallback analysis (AI unavailable)",
        used_fallback=True,
    )


# ==================== ANALYZER ====================

def build_analysis_prompt(summary: ContextSummary, visit: VisitSummaryForAnalysis) -> str:
    condition_ages = ", ".join(f"{cid}: {age}" for cid, age in summary.condition_ages.items()) or "None"
    return "\n".join([
        f"Existing conditions: {', '.join(summary.existing_conditions) or 'None known'}",
        f"Current medications: {', '.join(summary.current_medications) or 'None known'}",
        f"Already tracking: {', '.join(summary.active_tracking) or 'Nothing'}",
        f"Recently logged (24h cool-down): {', '.join(summary.recently_logged) or 'None'}",
        f"Condition diagnosed dates: {condition_ages}",
        "",
        "Visit summary:",
        visit.summary_text or "(no summary provided)",
        "",
        f"Diagnoses discussed: {', '.join(visit.diagnoses) or 'None'}",
        f"Medications started: {', '.join(m.name for m in visit.medications_started) or 'None'}",
        f"Medications changed: {', '.join(m.name for m in visit.medications_changed) or 'None'}",
        f"Medications stopped: {', '.join(visit.medications_stopped) or 'None'}",
    ])

def is_retryable_error(exc: BaseException) -> bool:
    """Transport failures, 429 and 5xx are worth another attempt; 4xx validation errors are not."""
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    return False

class DeltaAnalyzer:
    def __init__(
        self,
        client,
        context_service: PatientContextService,
        model: str = "gpt-4o",
        timeout_seconds: float = 45.0,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep=asyncio.sleep,
    ):
        if client is None:
            raise ValueError("A generative backend client is required for DeltaAnalyzer")
        self.client = client
        self.context_service = context_service
        self.model = model or "gpt-4o"
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self.sleep = sleep

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            f"[DeltaAnalyzer] Attempt {retry_state.attempt_number}/{self.max_attempts} failed "
            f"({retry_state.outcome.exception()}); retrying in {retry_state.next_action.sleep:.1f}s"
        )

    async def _complete(self, prompt: str) -> Optional[str]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_delay_seconds),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=self._log_retry,
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                completion = await self.client.chat.completions.create(
                    model=self.model,
                    store=False,  # zero data retention
                    temperature=0.3,
                    response_format={"type": "json_object"},
                    timeout=self.timeout_seconds,
                    messages=[
                        {"role": "system", "content": DELTA_ANALYSIS_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                )
        return completion.choices[0].message.content

    async def analyze_visit(self, user_id: str, visit: VisitSummaryForAnalysis) -> DeltaAnalysisResult:
        if not user_id:
            raise ValueError("user_id is required for delta analysis")
        context = await self.context_service.get_context(user_id)
        return await self._analyze(user_id, visit, context)

    async def _analyze(
        self,
        user_id: str,
        visit: VisitSummaryForAnalysis,
        context: Optional[PatientMedicalContext],
    ) -> DeltaAnalysisResult:
        logger.info(f"[DeltaAnalyzer] Analyzing visit {visit.visit_id} for user {user_id}")
        summary = self.context_service.summarize(context) if context else ContextSummary()
        prompt = build_analysis_prompt(summary, visit)

        try:
            content = await self._complete(prompt)
            result = parse_analysis_content(content)
        except Exception as e:
            logger.error(f"[DeltaAnalyzer] AI analysis failed, using fallback: {e}")
            return fallback_analysis(summary, visit)

        logger.info(
            f"[DeltaAnalyzer] Analysis complete for visit {visit.visit_id} "
            f"(nudges={len(result.nudges_to_create)}): {result.reasoning}"
        )
        return result

    async def analyze_and_update_context(self, user_id: str, visit: VisitSummaryForAnalysis) -> AnalyzedVisit:
        if not user_id:
            raise ValueError("user_id is required for delta analysis")

        # Analysis must see the context as it was before this visit.
        context = await self.context_service.get_context(user_id)
        if context and any(v.visit_id == visit.visit_id for v in context.visit_history):
            logger.info(f"[DeltaAnalyzer] Visit {visit.visit_id} already processed for user {user_id}; skipping analysis")
            return AnalyzedVisit(
                analysis=DeltaAnalysisResult(reasoning="Visit already processed"),
                context=context,
                already_processed=True,
            )

        analysis = await self._analyze(user_id, visit, context)
        context = await self.context_service.merge_visit(user_id, visit.to_context_update())
        return AnalyzedVisit(analysis=analysis, context=context)
