from case_state import apply_stage_result, attach_media, derive_status, derive_title
from models import (
    CaseRecord,
    CaseStage,
    CaseStatus,
    DiagnosisSet,
    MediaItem,
    PricingAnalysis,
    PricingRecommendation,
    RefinedTriage,
    TriageResult,
    VisionRecon,
)
from sample_payloads import (
    DIAGNOSIS_PAYLOAD,
    PRICING_ANALYSIS_PAYLOAD,
    PRICING_PAYLOAD,
    TRIAGE_PAYLOAD,
    VISION_PAYLOAD,
)


TRIAGE = TriageResult.model_validate(TRIAGE_PAYLOAD)
VISION = VisionRecon.model_validate(VISION_PAYLOAD)
DIAGNOSES = DiagnosisSet.model_validate(DIAGNOSIS_PAYLOAD)
PRICING = PricingRecommendation.model_validate(PRICING_PAYLOAD["price_recommendation"])
ANALYSIS = PricingAnalysis.model_validate(PRICING_ANALYSIS_PAYLOAD)
REFINEMENT = RefinedTriage.model_validate(
    {
        "vision_summary": "Drip at spout",
        "vision_hazards": [],
        "refined_diagnosis": {"most_likely": "Worn cartridge", "confidence": 0.85},
    }
)
PHOTO = MediaItem(url="https://img.test/tap.jpg", content_type="image/jpeg")


def _fully_priced_case():
    record = CaseRecord(case_id="case-1", external_job_id="EA-42", media=[PHOTO])
    record = apply_stage_result(record, CaseStage.TRIAGE, TRIAGE, description="Kitchen tap is leaking")
    record = apply_stage_result(record, CaseStage.VISION, VISION)
    record = apply_stage_result(record, CaseStage.REFINE, REFINEMENT)
    record = apply_stage_result(record, CaseStage.DIAGNOSIS, DIAGNOSES)
    record = apply_stage_result(record, CaseStage.PRICING, PRICING, diagnosis_index=1)
    return apply_stage_result(record, CaseStage.PRICING_ANALYSIS, ANALYSIS)


def test_status_follows_furthest_populated_stage():
    record = CaseRecord(case_id="case-1")
    assert derive_status(record) == CaseStatus.NEW

    record = apply_stage_result(record, CaseStage.TRIAGE, TRIAGE, description="Leak")
    assert record.status == CaseStatus.TRIAGED
    record = apply_stage_result(record, CaseStage.VISION, VISION)
    assert record.status == CaseStatus.VISIONED
    record = apply_stage_result(record, CaseStage.DIAGNOSIS, DIAGNOSES)
    assert record.status == CaseStatus.DIAGNOSED
    record = apply_stage_result(record, CaseStage.PRICING, PRICING, diagnosis_index=0)
    assert record.status == CaseStatus.PRICED


def test_retriage_clears_every_downstream_stage_but_keeps_media():
    record = _fully_priced_case()
    assert record.status == CaseStatus.PRICED

    retriaged = apply_stage_result(record, CaseStage.TRIAGE, TRIAGE, description="Tap still leaking")

    assert retriaged.vision is None
    assert retriaged.refinement is None
    assert retriaged.diagnosis is None
    assert retriaged.pricing is None
    assert retriaged.pricing_diagnosis_index is None
    assert retriaged.pricing_analysis is None
    assert retriaged.status == CaseStatus.TRIAGED
    assert retriaged.description == "Tap still leaking"
    assert retriaged.media == [PHOTO]


def test_new_vision_clears_diagnosis_and_pricing_only():
    record = _fully_priced_case()
    updated = apply_stage_result(record, CaseStage.VISION, VISION)

    assert updated.triage is not None
    assert updated.refinement is not None
    assert updated.diagnosis is None
    assert updated.pricing is None
    assert updated.pricing_analysis is None
    assert updated.status == CaseStatus.VISIONED


def test_new_diagnosis_clears_pricing():
    record = _fully_priced_case()
    updated = apply_stage_result(record, CaseStage.DIAGNOSIS, DIAGNOSES)

    assert updated.vision is not None
    assert updated.pricing is None
    assert updated.pricing_diagnosis_index is None
    assert updated.status == CaseStatus.DIAGNOSED


def test_refinement_and_analysis_leave_status_alone():
    record = CaseRecord(case_id="case-1")
    record = apply_stage_result(record, CaseStage.TRIAGE, TRIAGE, description="Leak")
    record = apply_stage_result(record, CaseStage.REFINE, REFINEMENT)
    record = apply_stage_result(record, CaseStage.PRICING_ANALYSIS, ANALYSIS)
    assert record.status == CaseStatus.TRIAGED
    assert record.refinement is not None
    assert record.pricing_analysis is not None


def test_apply_does_not_mutate_input_and_is_idempotent():
    base = CaseRecord(case_id="case-1")
    once = apply_stage_result(base, CaseStage.TRIAGE, TRIAGE, description="Leak")
    twice = apply_stage_result(once, CaseStage.TRIAGE, TRIAGE, description="Leak")

    assert base.triage is None
    assert base.status == CaseStatus.NEW
    assert once.model_dump(exclude={"updated_at"}) == twice.model_dump(exclude={"updated_at"})


def test_title_uses_category_summary_and_job_id():
    record = CaseRecord(case_id="case-1")
    assert derive_title(record) == "Untitled Case"

    record = apply_stage_result(record, CaseStage.TRIAGE, TRIAGE, description="Leak")
    assert record.title == "Plumbing: Leaking tap"

    record.external_job_id = "EA-42"
    assert derive_title(record) == "[EA-42] Plumbing: Leaking tap"


def test_title_summary_is_truncated():
    long_triage = TRIAGE.model_copy(update={"summary": "x" * 100})
    record = apply_stage_result(CaseRecord(case_id="c"), CaseStage.TRIAGE, long_triage, description="d")
    assert record.title == "Plumbing: " + "x" * 60


def test_trace_is_appended():
    from datetime import datetime, timezone

    from models import StageTrace

    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    trace = StageTrace(stage=CaseStage.TRIAGE, model="m", started_at=now, completed_at=now)
    record = apply_stage_result(
        CaseRecord(case_id="c"), CaseStage.TRIAGE, TRIAGE, description="d", trace=trace, now=now
    )
    assert record.traces == [trace]
    assert record.updated_at == now


def test_attach_media_appends():
    record = attach_media(CaseRecord(case_id="c", media=[PHOTO]), [PHOTO])
    assert len(record.media) == 2
