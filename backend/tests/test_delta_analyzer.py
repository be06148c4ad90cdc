"""
Delta analyzer tests: output normalization, rule-based fallback, and the
retry policy around the chat-completions call. The generative backend is
replaced by a scripted fake client.
"""
import asyncio
import json

import httpx
import openai
import pytest

from context_store import PATIENT_CONTEXTS_COLLECTION, MongoPatientContextStore
from delta_analyzer import (
    DELTA_ANALYSIS_PROMPT,
    ContextUpdateRecommendation,
    DeltaAnalyzer,
    MalformedAnalysisError,
    NudgeRecommendation,
    VisitSummaryForAnalysis,
    clamp_nudges,
    fallback_analysis,
    infer_tracking_from_medication,
    is_retryable_error,
    normalize_analysis,
    normalize_context_updates,
    normalize_nudge,
    parse_analysis_content,
)
from fakes import FakeChatClient, utc
from patient_context import ContextSummary, PatientContextService, StartedMedication

NOW = utc(2026, 3, 10, 15, 0)
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status):
    return cls(f"status {status}", response=httpx.Response(status, request=REQUEST), body=None)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_analyzer(fake_db, client, sleep=None):
    service = PatientContextService(MongoPatientContextStore(fake_db[PATIENT_CONTEXTS_COLLECTION]), clock=lambda: NOW)
    analyzer = DeltaAnalyzer(
        client,
        service,
        model="gpt-4o",
        timeout_seconds=12.0,
        max_attempts=3,
        retry_delay_seconds=1.0,
        sleep=sleep or RecordingSleep(),
    )
    return analyzer, service

def hypertension_visit(visit_id="visit-1"):
    return VisitSummaryForAnalysis(
        visit_id=visit_id,
        visit_date=NOW,
        summary_text="Discussed elevated readings, starting an ACE inhibitor.",
        diagnoses=["Hypertension"],
        medications_started=[StartedMedication(name="Lisinopril", dose="10mg", frequency="daily")],
    )

MODEL_RESPONSE = json.dumps({
    "nudges_to_create": [
        {"type": "followup", "reason": "Check in", "urgency": "week1"},
        {"type": "condition_tracking", "tracking_type": "bp", "urgency": "immediate", "is_new_diagnosis": True},
        {"type": "introduction", "reason": "New: hypertension", "urgency": "immediate", "is_new_diagnosis": True},
    ],
    "context_updates": {"new_conditions": ["hypertension"], "tracking_to_enable": ["bp", "steps"]},
    "reasoning": "New diagnosis with a new BP medication",
})


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_normalize_nudge_defaults_and_drops():
    assert normalize_nudge({"type": "spam"}) is None
    assert normalize_nudge("introduction") is None

    nudge = normalize_nudge({"type": "medication_checkin", "urgency": "tomorrow", "tracking_type": "steps", "reason": " "})
    assert nudge.urgency == "day1"
    assert nudge.reason == "Recommended by AI"
    assert nudge.tracking_type is None
    assert nudge.is_new_diagnosis is False


def test_clamp_nudges_orders_by_priority_when_over_cap():
    nudges = [
        NudgeRecommendation(type="insight"),
        NudgeRecommendation(type="followup"),
        NudgeRecommendation(type="medication_checkin"),
    ]
    assert [n.type for n in clamp_nudges(nudges)] == ["medication_checkin", "followup"]


def test_normalize_analysis_caps_five_mixed_nudges():
    raw = {"nudges_to_create": [
        {"type": "followup"},
        {"type": "insight"},
        {"type": "condition_tracking"},
        {"type": "followup"},
        {"type": "introduction"},
    ]}
    result = normalize_analysis(raw)
    assert [n.type for n in result.nudges_to_create] == ["introduction", "condition_tracking"]


def test_clamp_nudges_keeps_order_under_cap():
    nudges = [NudgeRecommendation(type="followup"), NudgeRecommendation(type="introduction")]
    assert [n.type for n in clamp_nudges(nudges)] == ["followup", "introduction"]


def test_clamp_nudges_delays_tracking_for_new_diagnosis():
    nudges = [
        NudgeRecommendation(type="condition_tracking", urgency="immediate", is_new_diagnosis=True),
        NudgeRecommendation(type="condition_tracking", urgency="immediate", is_new_diagnosis=False),
    ]
    assert [n.urgency for n in clamp_nudges(nudges)] == ["day3", "immediate"]


def test_normalize_context_updates_filters_values():
    updates = normalize_context_updates({"new_conditions": ["copd", 7, None], "tracking_to_enable": ["bp", "steps"]})
    assert updates == ContextUpdateRecommendation(new_conditions=["copd"], tracking_to_enable=["bp"])
    assert normalize_context_updates("nope") == ContextUpdateRecommendation()


def test_normalize_analysis_is_total():
    result = normalize_analysis({"nudges_to_create": "lots", "context_updates": None, "reasoning": 5})
    assert result.nudges_to_create == []
    assert result.context_updates == ContextUpdateRecommendation()
    assert result.reasoning == ""


@pytest.mark.parametrize("content", [None, "", "not json", "[1, 2]", '"text"'])
def test_parse_analysis_content_rejects_malformed(content):
    with pytest.raises(MalformedAnalysisError):
        parse_analysis_content(content)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

def test_infer_tracking_from_medication():
    assert infer_tracking_from_medication("Losartan 50mg") == "bp"
    assert infer_tracking_from_medication("Jardiance") == "glucose"
    assert infer_tracking_from_medication("Ozempic") == "weight"
    assert infer_tracking_from_medication("Atorvastatin") is None


def test_fallback_new_diagnosis_and_medication():
    result = fallback_analysis(ContextSummary(), hypertension_visit())

    assert [n.type for n in result.nudges_to_create] == ["introduction", "medication_checkin"]
    intro, checkin = result.nudges_to_create
    assert intro.condition_id == "hypertension"
    assert intro.urgency == "immediate"
    assert intro.is_new_diagnosis is True
    assert checkin.medication_name == "Lisinopril"
    assert checkin.tracking_type == "bp"
    assert checkin.urgency == "day1"
    assert result.context_updates.new_conditions == ["Hypertension"]
    assert result.context_updates.tracking_to_enable == ["bp"]
    assert result.used_fallback is True


def test_fallback_never_exceeds_cap():
    visit = VisitSummaryForAnalysis(
        visit_id="visit-9",
        visit_date=NOW,
        diagnoses=["Diabetes"],
        medications_started=[StartedMedication(name=n) for n in ("Metformin", "Lisinopril", "Ozempic")],
    )
    result = fallback_analysis(ContextSummary(active_tracking=["glucose"]), visit)

    assert len(result.nudges_to_create) == 2
    assert result.context_updates.tracking_to_enable == ["bp", "weight"]


def test_fallback_recognizes_existing_condition_by_containment():
    summary = ContextSummary(existing_conditions=["Hypertension"])
    visit = VisitSummaryForAnalysis(visit_id="visit-2", visit_date=NOW, diagnoses=["hypertension, stage 2"])

    result = fallback_analysis(summary, visit)

    assert result.nudges_to_create == []
    assert result.context_updates.new_conditions == []


# ---------------------------------------------------------------------------
# Retry classification
# ---------------------------------------------------------------------------

def test_is_retryable_error_classification():
    assert is_retryable_error(openai.APIConnectionError(request=REQUEST)) is True
    assert is_retryable_error(openai.APITimeoutError(request=REQUEST)) is True
    assert is_retryable_error(status_error(openai.RateLimitError, 429)) is True
    assert is_retryable_error(status_error(openai.InternalServerError, 500)) is True
    assert is_retryable_error(status_error(openai.APIStatusError, 503)) is True
    assert is_retryable_error(status_error(openai.BadRequestError, 400)) is False
    assert is_retryable_error(status_error(openai.AuthenticationError, 401)) is False
    assert is_retryable_error(ValueError("boom")) is False


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

def test_analyzer_requires_client(fake_db):
    with pytest.raises(ValueError):
        make_analyzer(fake_db, None)


def test_analyze_visit_normalizes_model_output(fake_db):
    client = FakeChatClient(MODEL_RESPONSE)
    analyzer, _ = make_analyzer(fake_db, client)

    result = asyncio.run(analyzer.analyze_visit("user-1", hypertension_visit()))

    assert [n.type for n in result.nudges_to_create] == ["introduction", "condition_tracking"]
    assert result.nudges_to_create[1].urgency == "day3"
    assert result.context_updates.tracking_to_enable == ["bp"]
    assert result.used_fallback is False

    call = client.completions.calls[0]
    assert call["temperature"] == 0.3
    assert call["response_format"] == {"type": "json_object"}
    assert call["store"] is False
    assert call["timeout"] == 12.0
    assert call["messages"][0] == {"role": "system", "content": DELTA_ANALYSIS_PROMPT}
    assert "Existing conditions: None known" in call["messages"][1]["content"]
    assert "Medications started: Lisinopril" in call["messages"][1]["content"]


def test_analyze_visit_retries_transient_errors(fake_db):
    sleep = RecordingSleep()
    client = FakeChatClient(openai.APIConnectionError(request=REQUEST), MODEL_RESPONSE)
    analyzer, _ = make_analyzer(fake_db, client, sleep)

    result = asyncio.run(analyzer.analyze_visit("user-1", hypertension_visit()))

    assert len(client.completions.calls) == 2
    assert sleep.delays == [1.0]
    assert result.used_fallback is False


def test_analyze_visit_falls_back_after_exhausting_retries(fake_db):
    sleep = RecordingSleep()
    client = FakeChatClient(*(status_error(openai.RateLimitError, 429) for _ in range(3)))
    analyzer, _ = make_analyzer(fake_db, client, sleep)

    result = asyncio.run(analyzer.analyze_visit("user-1", hypertension_visit()))

    assert len(client.completions.calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert result.used_fallback is True
    assert result.reasoning == "Fallback analysis (AI unavailable)"


def test_analyze_visit_does_not_retry_validation_errors(fake_db):
    sleep = RecordingSleep()
    client = FakeChatClient(status_error(openai.BadRequestError, 400))
    analyzer, _ = make_analyzer(fake_db, client, sleep)

    result = asyncio.run(analyzer.analyze_visit("user-1", hypertension_visit()))

    assert len(client.completions.calls) == 1
    assert sleep.delays == []
    assert result.used_fallback is True


def test_analyze_visit_falls_back_on_malformed_output(fake_db):
    client = FakeChatClient("Sure! Here are some nudges.")
    analyzer, _ = make_analyzer(fake_db, client)

    result = asyncio.run(analyzer.analyze_visit("user-1", hypertension_visit()))

    assert len(client.completions.calls) == 1
    assert result.used_fallback is True
    assert [n.type for n in result.nudges_to_create] == ["introduction", "medication_checkin"]


def test_analyze_visit_requires_user_id(fake_db):
    analyzer, _ = make_analyzer(fake_db, FakeChatClient(MODEL_RESPONSE))
    with pytest.raises(ValueError):
        asyncio.run(analyzer.analyze_visit("", hypertension_visit()))


def test_analyze_and_update_context_uses_pre_visit_context(fake_db):
    client = FakeChatClient("{}", "{}")
    analyzer, service = make_analyzer(fake_db, client)

    async def scenario():
        first = await analyzer.analyze_and_update_context("user-1", hypertension_visit("visit-1"))
        second = await analyzer.analyze_and_update_context("user-1", hypertension_visit("visit-2"))
        return first, second

    first, second = asyncio.run(scenario())

    first_prompt = client.completions.calls[0]["messages"][1]["content"]
    second_prompt = client.completions.calls[1]["messages"][1]["content"]
    assert "Existing conditions: None known" in first_prompt
    assert "Existing conditions: Hypertension" in second_prompt
    assert "Current medications: Lisinopril 10mg daily" in second_prompt
    assert [c.id for c in first.context.conditions] == ["hypertension"]
    assert [v.visit_id for v in second.context.visit_history] == ["visit-1", "visit-2"]
    assert first.analysis.nudges_to_create == []


def test_new_hypertension_patient_end_to_end(fake_db):
    analyzer, _ = make_analyzer(fake_db, FakeChatClient(status_error(openai.AuthenticationError, 401)))
    visit = VisitSummaryForAnalysis(
        visit_id="visit-1",
        visit_date=NOW,
        diagnoses=["Hypertension"],
        medications_started=[StartedMedication(name="Lisinopril", dose="10mg", frequency="daily")],
    )

    analyzed = asyncio.run(analyzer.analyze_and_update_context("user-1", visit))

    conditions = analyzed.context.conditions
    assert [(c.id, c.name, c.status) for c in conditions] == [("hypertension", "Hypertension", "active")]
    assert [(m.name, m.active) for m in analyzed.context.medications] == [("Lisinopril", True)]
    introductions = [n for n in analyzed.analysis.nudges_to_create if n.type == "introduction"]
    assert len(introductions) == 1
    assert introductions[0].condition_id == "hypertension"
    assert introductions[0].urgency == "immediate"


def test_reprocessed_visit_skips_analysis(fake_db):
    client = FakeChatClient(MODEL_RESPONSE, MODEL_RESPONSE)
    analyzer, _ = make_analyzer(fake_db, client)

    async def scenario():
        first = await analyzer.analyze_and_update_context("user-1", hypertension_visit())
        again = await analyzer.analyze_and_update_context("user-1", hypertension_visit())
        return first, again

    first, again = asyncio.run(scenario())

    assert len(client.completions.calls) == 1
    assert first.already_processed is False
    assert again.already_processed is True
    assert again.analysis.nudges_to_create == []
    assert [v.visit_id for v in again.context.visit_history] == ["visit-1"]
