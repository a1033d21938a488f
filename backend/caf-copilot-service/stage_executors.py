"""
CAF Copilot Service - Stage executors

Each executor runs one pipeline stage:
  preconditions -> prompt -> model call -> JSON recovery -> schema check
and returns either the typed stage output or a `StageFailure`. Executors never
touch persistence; the orchestrator applies their output through `case_state`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError

from json_recovery import recover_json, recover_json_object
from model_invoker import ModelConfig, ModelInvoker
from models import (
    CaseStage,
    DiagnosisCandidate,
    DiagnosisSet,
    MediaItem,
    PricingAnalysis,
    PricingRecommendation,
    QuestionItem,
    RefinedTriage,
    SchemaViolation,
    StageFailure,
    TriageResult,
    ValidationFailure,
    VisionRecon,
    is_failure,
    validate_structured_output,
)
from prompts import (
    PromptPayload,
    build_final_diagnosis_prompt,
    build_pricing_analysis_prompt,
    build_pricing_prompt,
    build_refine_prompt,
    build_triage_prompt,
    build_vision_prompt,
)

logger = logging.getLogger(__name__)

CHECKLIST_MIN_ITEMS = 3
CHECKLIST_MAX_ITEMS = 10
MAX_DIAGNOSES = 4

PRICING_NUMERIC_FIELDS = [
    "labour_minutes_estimated",
    "labour_cost_estimated",
    "materials_cost_estimated",
    "materials_with_buffer",
    "materials_with_markup",
    "subtotal_before_markup",
    "job_markup_percent",
    "job_markup_amount",
    "final_recommended_price",
]
PRICING_STRING_FIELDS = ["currency", "notes"]

ANALYSIS_REQUIRED_FIELDS = [
    "currency",
    "fair_range_low",
    "fair_range_high",
    "subcontractor_quote_incl_gst",
    "position_vs_market",
    "recommended_markup_percent",
    "recommended_markup_amount",
    "caf_recommended_sell_price",
    "caf_position_after_markup",
    "should_negotiate_or_change_subbie",
    "breakdown",
]
BREAKDOWN_STRING_FIELDS = ["scope_summary", "comparison_summary", "markup_strategy"]
BREAKDOWN_ARRAY_FIELDS = ["baseline_costs", "market_benchmarks"]


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _error_lines(exc: ValidationError) -> List[str]:
    lines: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc}: {err.get('msg', 'invalid')}")
    return lines


def _missing_from_errors(exc: ValidationError) -> List[str]:
    return [
        ".".join(str(p) for p in err.get("loc", ()))
        for err in exc.errors()
        if err.get("type") == "missing"
    ]


class StageExecutor:
    stage: CaseStage

    def __init__(self, invoker: ModelInvoker, config: ModelConfig) -> None:
        self.invoker = invoker
        self.config = config

    def _tag(self, failure: StageFailure) -> StageFailure:
        return failure.model_copy(update={"stage": self.stage})

    def _precondition(self, message: str, field: Optional[str] = None) -> ValidationFailure:
        return ValidationFailure(message=message, field=field, stage=self.stage)

    async def _generate(self, prompt: PromptPayload, expect_object: bool = True) -> Any:
        raw = await self.invoker.invoke(self.config, prompt)
        if is_failure(raw):
            logger.warning("%s model call failed: %s", self.stage.value, raw.message)
            return self._tag(raw)
        recovered = recover_json_object(raw) if expect_object else recover_json(raw)
        if is_failure(recovered):
            logger.warning("%s model output could not be parsed as JSON.", self.stage.value)
            return self._tag(recovered)
        return recovered

    def _validate(self, model_cls: type[BaseModel], payload: Any) -> Union[BaseModel, SchemaViolation]:
        try:
            return validate_structured_output(model_cls, payload)
        except ValidationError as exc:
            return SchemaViolation(
                message=f"{self.stage.value} output does not match the expected schema.",
                stage=self.stage,
                payload=payload,
                missing_fields=_missing_from_errors(exc),
                errors=_error_lines(exc),
            )


class TriageExecutor(StageExecutor):
    stage = CaseStage.TRIAGE

    async def run(self, description: str) -> Union[TriageResult, StageFailure]:
        if not (description or "").strip():
            return self._precondition("Description is required before triage can run.", "description")

        payload = await self._generate(build_triage_prompt(description))
        if is_failure(payload):
            return payload

        result = self._validate(TriageResult, payload)
        if is_failure(result):
            return result

        n_questions = len(result.questions_checklist)
        if not CHECKLIST_MIN_ITEMS <= n_questions <= CHECKLIST_MAX_ITEMS:
            logger.warning(
                "Triage checklist has %d item(s); expected %d-%d. Passing through.",
                n_questions,
                CHECKLIST_MIN_ITEMS,
                CHECKLIST_MAX_ITEMS,
            )
        return result


class VisionReconExecutor(StageExecutor):
    stage = CaseStage.VISION

    async def run(self, context: str, media: List[MediaItem]) -> Union[VisionRecon, StageFailure]:
        images = [m for m in media if m.is_image]
        if not images:
            return self._precondition("Upload at least one photo before running vision recon.", "media")
        if not (context or "").strip():
            return self._precondition("Provide a short context for vision analysis.", "context")

        payload = await self._generate(build_vision_prompt(context, images))
        if is_failure(payload):
            return payload
        return self._validate(VisionRecon, payload)


class RefinementExecutor(StageExecutor):
    stage = CaseStage.REFINE

    async def run(
        self,
        description: str,
        checklist: List[QuestionItem],
        answers: Dict[str, Optional[str]],
        tenant_text: str,
        media: List[MediaItem],
    ) -> Union[RefinedTriage, StageFailure]:
        if not (description or "").strip():
            return self._precondition("Description is required before refinement can run.", "description")

        prompt = build_refine_prompt(description, checklist, answers, tenant_text, media)
        payload = await self._generate(prompt)
        if is_failure(payload):
            return payload
        return self._validate(RefinedTriage, payload)


class FinalDiagnosisExecutor(StageExecutor):
    stage = CaseStage.DIAGNOSIS

    async def run(
        self,
        description: str,
        triage: Optional[TriageResult],
        answers: Dict[str, Optional[str]],
        tenant_text: str,
        vision_recon_raw: Optional[str],
    ) -> Union[DiagnosisSet, StageFailure]:
        if triage is None:
            return self._precondition("Run triage before final diagnosis.", "triage")
        if not (vision_recon_raw or "").strip():
            return self._precondition(
                "Run vision recon first (and ensure recon JSON is present).",
                "vision_recon_raw",
            )
        if not (description or "").strip():
            return self._precondition("Description is required before final diagnosis.", "description")

        prompt = build_final_diagnosis_prompt(
            description=description,
            triage=triage,
            answers=answers,
            tenant_text=tenant_text,
            vision_recon_raw=vision_recon_raw or "",
        )
        payload = await self._generate(prompt, expect_object=False)
        if is_failure(payload):
            return payload

        if isinstance(payload, list):
            payload = {"diagnoses": payload}
        if isinstance(payload, dict) and isinstance(payload.get("diagnoses"), list):
            candidates = payload["diagnoses"]
            if len(candidates) > MAX_DIAGNOSES:
                logger.warning(
                    "Final diagnosis returned %d candidates; keeping the first %d.",
                    len(candidates),
                    MAX_DIAGNOSES,
                )
                payload = {**payload, "diagnoses": candidates[:MAX_DIAGNOSES]}
        return self._validate(DiagnosisSet, payload)


class PricingExecutor(StageExecutor):
    stage = CaseStage.PRICING

    async def run(
        self,
        diagnosis_set: Optional[DiagnosisSet],
        diagnosis_index: Optional[int],
        description: str,
    ) -> Union[PricingRecommendation, StageFailure]:
        if diagnosis_set is None:
            return self._precondition("Run final diagnosis before pricing.", "diagnosis")
        if diagnosis_index is None or not 0 <= diagnosis_index < len(diagnosis_set.diagnoses):
            return self._precondition(
                f"Select a diagnosis between 0 and {len(diagnosis_set.diagnoses) - 1} before pricing.",
                "diagnosis_index",
            )

        selected = diagnosis_set.diagnoses[diagnosis_index]
        payload = await self._generate(build_pricing_prompt(selected, description or ""))
        if is_failure(payload):
            return payload
        return self.check_price_recommendation(payload)

    def check_price_recommendation(self, payload: Dict[str, Any]) -> Union[PricingRecommendation, StageFailure]:
        recommendation = payload.get("price_recommendation")
        if recommendation is None and "final_recommended_price" in payload:
            # Tolerate a flat object without the wrapper key.
            recommendation = payload
        if not isinstance(recommendation, dict):
            return SchemaViolation(
                message="Pricing response is missing the price_recommendation object.",
                stage=self.stage,
                payload=payload,
                missing_fields=["price_recommendation"],
            )

        missing = [f for f in PricingRecommendation.model_fields if f not in recommendation]
        errors = [
            f"{f}: expected a number" for f in PRICING_NUMERIC_FIELDS
            if f in recommendation and not _is_number(recommendation[f])
        ]
        errors += [
            f"{f}: expected a string" for f in PRICING_STRING_FIELDS
            if f in recommendation and not isinstance(recommendation[f], str)
        ]
        if missing or errors:
            return SchemaViolation(
                message="Pricing response is incomplete or has mistyped fields.",
                stage=self.stage,
                payload=payload,
                missing_fields=missing,
                errors=errors,
            )
        return self._validate(PricingRecommendation, recommendation)


class PricingAnalysisExecutor(StageExecutor):
    stage = CaseStage.PRICING_ANALYSIS

    async def run(
        self,
        diagnosis: Optional[DiagnosisCandidate],
        job_text: Optional[str],
    ) -> Union[PricingAnalysis, StageFailure]:
        if diagnosis is None and not (job_text or "").strip():
            return self._precondition("Provide a selected diagnosis or job text to analyse.", "job_text")

        payload = await self._generate(build_pricing_analysis_prompt(diagnosis, job_text))
        if is_failure(payload):
            return payload
        return self.check_analysis(payload)

    def check_analysis(self, payload: Dict[str, Any]) -> Union[PricingAnalysis, StageFailure]:
        missing = [f for f in ANALYSIS_REQUIRED_FIELDS if f not in payload]
        if missing:
            return SchemaViolation(
                message=f"Pricing analysis response missing required field(s): {', '.join(missing)}",
                stage=self.stage,
                payload=payload,
                missing_fields=missing,
            )

        breakdown = payload.get("breakdown")
        errors: List[str] = []
        if not isinstance(breakdown, dict):
            errors.append("breakdown: expected an object")
        else:
            errors += [
                f"breakdown.{f}: expected a string" for f in BREAKDOWN_STRING_FIELDS
                if not isinstance(breakdown.get(f), str)
            ]
            errors += [
                f"breakdown.{f}: expected an array" for f in BREAKDOWN_ARRAY_FIELDS
                if not isinstance(breakdown.get(f), list)
            ]
        if errors:
            return SchemaViolation(
                message="Pricing analysis response has an invalid or incomplete breakdown section.",
                stage=self.stage,
                payload=payload,
                errors=errors,
            )
        return self._validate(PricingAnalysis, payload)
