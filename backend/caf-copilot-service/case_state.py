"""
CAF Copilot Service - Case state transitions

Applies a successful stage output to a case record:
- clears every downstream stage field (cascade invalidation)
- derives status from the furthest populated stage
- derives the title from the triage category and summary
Media is never touched by stage transitions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from models import (
    UNTITLED_CASE,
    CaseRecord,
    CaseStage,
    CaseStatus,
    MediaItem,
    StageTrace,
    utc_now,
)

TITLE_SUMMARY_CHARS = 60

STAGE_FIELDS: Dict[CaseStage, str] = {
    CaseStage.TRIAGE: "triage",
    CaseStage.VISION: "vision",
    CaseStage.REFINE: "refinement",
    CaseStage.DIAGNOSIS: "diagnosis",
    CaseStage.PRICING: "pricing",
    CaseStage.PRICING_ANALYSIS: "pricing_analysis",
}

_PRICING_FIELDS = ("pricing", "pricing_diagnosis_index", "pricing_analysis")

INVALIDATES: Dict[CaseStage, Tuple[str, ...]] = {
    CaseStage.TRIAGE: ("vision", "refinement", "diagnosis", *_PRICING_FIELDS),
    CaseStage.VISION: ("diagnosis", *_PRICING_FIELDS),
    CaseStage.REFINE: (),
    CaseStage.DIAGNOSIS: _PRICING_FIELDS,
    CaseStage.PRICING: (),
    CaseStage.PRICING_ANALYSIS: (),
}


def derive_status(record: CaseRecord) -> CaseStatus:
    if record.pricing is not None:
        return CaseStatus.PRICED
    if record.diagnosis is not None:
        return CaseStatus.DIAGNOSED
    if record.vision is not None:
        return CaseStatus.VISIONED
    if record.triage is not None:
        return CaseStatus.TRIAGED
    return CaseStatus.NEW


def derive_title(record: CaseRecord) -> str:
    if record.triage is not None:
        category = record.triage.category.strip() or "General"
        summary = record.triage.summary.strip()[:TITLE_SUMMARY_CHARS] or "No summary"
        base = f"{category}: {summary}"
    elif record.diagnosis is not None:
        top = record.diagnosis.diagnoses[0]
        base = f"{top.trade_required.strip() or 'General'}: {top.title.strip()[:TITLE_SUMMARY_CHARS]}"
    else:
        return UNTITLED_CASE

    job_id = (record.external_job_id or "").strip()
    if job_id:
        return f"[{job_id}] {base}"
    return base


def apply_stage_result(
    record: CaseRecord,
    stage: CaseStage,
    result: Any,
    *,
    description: Optional[str] = None,
    diagnosis_index: Optional[int] = None,
    trace: Optional[StageTrace] = None,
    now: Optional[datetime] = None,
) -> CaseRecord:
    """
    Returns a new record with `result` stored for `stage`; `record` is not modified.
    """
    updated = record.model_copy(deep=True)
    for field in INVALIDATES[stage]:
        setattr(updated, field, None)
    setattr(updated, STAGE_FIELDS[stage], result)

    if stage == CaseStage.TRIAGE and description is not None:
        updated.description = description.strip()
    if stage == CaseStage.PRICING:
        updated.pricing_diagnosis_index = diagnosis_index
    if trace is not None:
        updated.traces.append(trace)

    updated.status = derive_status(updated)
    updated.title = derive_title(updated)
    updated.updated_at = now or utc_now()
    return updated


def attach_media(record: CaseRecord, items: List[MediaItem]) -> CaseRecord:
    updated = record.model_copy(deep=True)
    updated.media.extend(item.model_copy() for item in items)
    updated.updated_at = utc_now()
    return updated
