"""
CAF Copilot Service - Data Models

Pydantic contracts for:
- Case lifecycle
- Stage outputs (triage, vision recon, diagnosis, pricing)
- Typed stage failures
- API request/response payloads
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


UNTITLED_CASE = "Untitled Case"


# =============================================================================
# ENUMS
# =============================================================================


class CaseStatus(str, Enum):
    NEW = "new"
    TRIAGED = "triaged"
    VISIONED = "visioned"
    DIAGNOSED = "diagnosed"
    PRICED = "priced"


class CaseStage(str, Enum):
    TRIAGE = "triage"
    VISION = "vision"
    REFINE = "refine"
    DIAGNOSIS = "diagnosis"
    PRICING = "pricing"
    PRICING_ANALYSIS = "pricing_analysis"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# CASE INPUT MODELS
# =============================================================================


class StageOutputModel(BaseModel):
    # Floats must stay finite to round-trip through stored JSON.
    model_config = ConfigDict(allow_inf_nan=False)


class MediaItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    content_type: Optional[str] = Field(default=None, alias="contentType")

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").lower().startswith("image/")


class QuestionItem(StageOutputModel):
    id: str
    question: str
    reason: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


# =============================================================================
# STAGE OUTPUT MODELS
# =============================================================================


class TriageDiagnosis(StageOutputModel):
    most_likely: str
    alternatives: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class TriageResult(StageOutputModel):
    category: str
    hazards: List[str] = Field(default_factory=list)
    summary: str
    questions_checklist: List[QuestionItem] = Field(default_factory=list)
    tenant_message: Optional[str] = None
    diagnosis: TriageDiagnosis


class VisionRecon(StageOutputModel):
    vision_summary: str
    objects: List[str] = Field(default_factory=list)
    visible_damage: Dict[str, Any] = Field(default_factory=dict)
    hazards: List[str] = Field(default_factory=list)
    materials: Dict[str, Any] = Field(default_factory=dict)
    labels_or_text: List[str] = Field(default_factory=list)
    measurements: Dict[str, Any] = Field(default_factory=dict)
    location_hint: Optional[str] = None


class RefinedDiagnosis(StageOutputModel):
    most_likely: str
    alternatives: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    notes: Optional[str] = None


class RefinedTriage(StageOutputModel):
    vision_summary: str
    vision_hazards: List[str] = Field(default_factory=list)
    refined_diagnosis: RefinedDiagnosis


class DiagnosisCandidate(StageOutputModel):
    title: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity
    urgency_hours: int = Field(ge=0)
    safety_concerns: List[str] = Field(default_factory=list)
    trade_required: str
    repair_steps: List[str] = Field(default_factory=list)
    materials_needed: List[str] = Field(default_factory=list)
    estimated_labor_minutes: int = Field(ge=0)
    estimated_material_cost: float = Field(ge=0.0)

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class DiagnosisSet(StageOutputModel):
    diagnoses: List[DiagnosisCandidate] = Field(min_length=1, max_length=4)


class PricingRecommendation(StageOutputModel):
    currency: str
    labour_minutes_estimated: float
    labour_cost_estimated: float
    materials_cost_estimated: float
    materials_with_buffer: float
    materials_with_markup: float
    subtotal_before_markup: float
    job_markup_percent: float
    job_markup_amount: float
    final_recommended_price: float
    notes: str


class BaselineCost(StageOutputModel):
    item: str
    estimated_cost_ex_gst: float
    notes: Optional[str] = None


class PricingBreakdown(StageOutputModel):
    scope_summary: str
    baseline_costs: List[BaselineCost] = Field(default_factory=list)
    market_benchmarks: List[str] = Field(default_factory=list)
    comparison_summary: str
    markup_strategy: str


class PricingAnalysis(StageOutputModel):
    currency: str
    fair_range_low: float
    fair_range_high: float
    subcontractor_quote_incl_gst: Optional[float]
    position_vs_market: str
    recommended_markup_percent: float
    recommended_markup_amount: float
    caf_recommended_sell_price: float
    caf_position_after_markup: str
    should_negotiate_or_change_subbie: bool
    breakdown: PricingBreakdown


class StageTrace(BaseModel):
    stage: CaseStage
    model: Optional[str] = None
    started_at: datetime
    completed_at: datetime
    notes: Optional[str] = None


class CaseRecord(BaseModel):
    case_id: str
    external_job_id: Optional[str] = None
    title: str = UNTITLED_CASE
    description: str = ""
    status: CaseStatus = CaseStatus.NEW
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    triage: Optional[TriageResult] = None
    vision: Optional[VisionRecon] = None
    refinement: Optional[RefinedTriage] = None
    diagnosis: Optional[DiagnosisSet] = None
    pricing: Optional[PricingRecommendation] = None
    pricing_diagnosis_index: Optional[int] = None
    pricing_analysis: Optional[PricingAnalysis] = None

    media: List[MediaItem] = Field(default_factory=list)
    traces: List[StageTrace] = Field(default_factory=list)


# =============================================================================
# FAILURE MODELS
# =============================================================================


class StageFailure(BaseModel):
    """
    Base for every failure value returned (not raised) by the pipeline.
    """

    kind: str
    message: str
    stage: Optional[CaseStage] = None


class ValidationFailure(StageFailure):
    kind: Literal["validation_failure"] = "validation_failure"
    field: Optional[str] = None
    not_found: bool = False


class NetworkFailure(StageFailure):
    kind: Literal["network_failure"] = "network_failure"
    endpoint: Optional[str] = None


class UpstreamFailure(StageFailure):
    kind: Literal["upstream_failure"] = "upstream_failure"
    status_code: Optional[int] = None
    body: Optional[str] = None
    timeout: bool = False


class MalformedModelOutput(StageFailure):
    kind: Literal["malformed_model_output"] = "malformed_model_output"
    raw_text: str = ""
    cleaned_text: str = ""


class SchemaViolation(StageFailure):
    kind: Literal["schema_violation"] = "schema_violation"
    payload: Any = None
    missing_fields: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class VersionConflict(StageFailure):
    kind: Literal["version_conflict"] = "version_conflict"
    expected_version: Optional[int] = None
    actual_version: Optional[int] = None


class StageSuccess(BaseModel):
    stage: CaseStage
    result: Any
    case: CaseRecord


# =============================================================================
# API MODELS
# =============================================================================


class CreateCaseRequest(BaseModel):
    external_job_id: Optional[str] = None
    description: Optional[str] = None


class CaseResponse(BaseModel):
    success: bool
    case: CaseRecord


class CaseListResponse(BaseModel):
    success: bool
    count: int
    cases: List[CaseRecord] = Field(default_factory=list)


class TriageRequest(BaseModel):
    description: str


class TenantMessageRequest(BaseModel):
    answers: Dict[str, Optional[str]] = Field(default_factory=dict)


class TenantMessageResponse(BaseModel):
    success: bool
    case_id: str
    message: str
    unanswered: List[QuestionItem] = Field(default_factory=list)


class VisionReconRequest(BaseModel):
    context: str
    media: Optional[List[MediaItem]] = None


class RefineRequest(BaseModel):
    answers: Dict[str, Optional[str]] = Field(default_factory=dict)
    tenant_text: str = ""


class FinalDiagnosisRequest(BaseModel):
    answers: Dict[str, Optional[str]] = Field(default_factory=dict)
    tenant_text: str = ""
    vision_recon_raw: Optional[str] = None


class PricingRequest(BaseModel):
    diagnosis_index: int = Field(ge=0)
    description: Optional[str] = None


class PricingAnalysisRequest(BaseModel):
    diagnosis_index: Optional[int] = Field(default=None, ge=0)
    job_text: Optional[str] = None


class StageResponse(BaseModel):
    success: bool
    case_id: str
    stage: CaseStage
    status: CaseStatus
    result: Dict[str, Any]
    case: CaseRecord


class UploadResponse(BaseModel):
    success: bool
    url: str
    content_type: Optional[str] = None
    pathname: str
    bytes_uploaded: int


class HealthResponse(BaseModel):
    status: str
    service: str
    case_store_backend: str
    media_upload_backend: str
    models: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# SCHEMA CHECK HELPERS
# =============================================================================


def validate_structured_output(model_cls: Any, payload: Dict[str, Any]) -> Any:
    """
    Strict schema gate used after any LLM output.
    Raises pydantic ValidationError on mismatches.
    """
    return model_cls.model_validate(payload)


def is_failure(value: Any) -> bool:
    return isinstance(value, StageFailure)
