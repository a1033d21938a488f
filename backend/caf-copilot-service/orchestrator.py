"""
CAF Copilot Service - Pipeline orchestration

Coordinates the maintenance-case pipeline:
- triage -> (tenant message) -> vision recon -> refinement -> final diagnosis
- pricing of a selected diagnosis, plus market pricing analysis

Every stage run reads the case, executes one stage, applies the result through
`case_state`, and saves with the version it read. Stage runs return
`StageSuccess` or a `StageFailure` value; they do not raise for expected failures.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from case_repository import (
    CaseRepository,
    CaseVersionConflictError,
    InMemoryCaseRepository,
    SqliteCaseRepository,
    SupabaseCaseRepository,
)
from case_state import apply_stage_result, attach_media, derive_title
from env_loader import env_float, env_str, load_service_env
from media_storage import MediaStorage, build_media_storage
from model_invoker import ModelConfig, ModelInvoker
from models import (
    CaseRecord,
    CaseStage,
    MediaItem,
    QuestionItem,
    StageFailure,
    StageSuccess,
    StageTrace,
    ValidationFailure,
    VersionConflict,
    is_failure,
    utc_now,
)
from prompts import build_tenant_message
from stage_executors import (
    FinalDiagnosisExecutor,
    PricingAnalysisExecutor,
    PricingExecutor,
    RefinementExecutor,
    TriageExecutor,
    VisionReconExecutor,
)

load_service_env()

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "meta-llama/llama-3.3-70b-instruct"
DEFAULT_VISION_MODEL = "google/gemini-2.0-flash-001"

DEFAULT_STAGE_MODELS: Dict[CaseStage, str] = {
    CaseStage.TRIAGE: DEFAULT_TEXT_MODEL,
    CaseStage.VISION: DEFAULT_VISION_MODEL,
    CaseStage.REFINE: DEFAULT_VISION_MODEL,
    CaseStage.DIAGNOSIS: DEFAULT_TEXT_MODEL,
    CaseStage.PRICING: DEFAULT_TEXT_MODEL,
    CaseStage.PRICING_ANALYSIS: DEFAULT_TEXT_MODEL,
}

StageOutcome = Union[StageSuccess, StageFailure]


def _key_error_message(exc: KeyError) -> str:
    return str(exc.args[0]) if exc.args else "Case not found."


class CafCopilotOrchestrator:
    """
    Owns the case repository, media storage, model configuration and stage executors.
    """

    def __init__(
        self,
        case_repository: Optional[CaseRepository] = None,
        invoker: Optional[ModelInvoker] = None,
        media_storage: Optional[MediaStorage] = None,
    ) -> None:
        self.local_data_dir = Path(
            env_str("CAF_LOCAL_DATA_DIR", "./local_data") or "./local_data"
        ).expanduser().resolve()
        self.sqlite_db_path = env_str("CAF_SQLITE_DB_PATH") or str(
            self.local_data_dir / "caf_cases.sqlite3"
        )
        self.case_store_backend = (env_str("CAF_CASE_STORE_BACKEND", "sqlite") or "sqlite").lower()
        self.case_repository: CaseRepository = case_repository or self._build_case_repository()
        self.case_store_backend = self.case_repository.backend_name
        self.media_storage: MediaStorage = media_storage or build_media_storage()

        self.invoker = invoker or ModelInvoker()
        self.model_configs: Dict[CaseStage, ModelConfig] = {
            stage: ModelConfig.from_env(stage.value, default_model)
            for stage, default_model in DEFAULT_STAGE_MODELS.items()
        }
        self.triage_executor = TriageExecutor(self.invoker, self.model_configs[CaseStage.TRIAGE])
        self.vision_executor = VisionReconExecutor(self.invoker, self.model_configs[CaseStage.VISION])
        self.refinement_executor = RefinementExecutor(self.invoker, self.model_configs[CaseStage.REFINE])
        self.diagnosis_executor = FinalDiagnosisExecutor(
            self.invoker, self.model_configs[CaseStage.DIAGNOSIS]
        )
        self.pricing_executor = PricingExecutor(self.invoker, self.model_configs[CaseStage.PRICING])
        self.pricing_analysis_executor = PricingAnalysisExecutor(
            self.invoker, self.model_configs[CaseStage.PRICING_ANALYSIS]
        )

        logger.info(
            "CafCopilotOrchestrator initialized | store=%s | media=%s | triage=%s | vision=%s | "
            "refine=%s | diagnosis=%s | pricing=%s | pricing_analysis=%s | llm_timeout=%.1fs",
            self.case_store_backend,
            self.media_storage.backend_name,
            self.model_configs[CaseStage.TRIAGE].model,
            self.model_configs[CaseStage.VISION].model,
            self.model_configs[CaseStage.REFINE].model,
            self.model_configs[CaseStage.DIAGNOSIS].model,
            self.model_configs[CaseStage.PRICING].model,
            self.model_configs[CaseStage.PRICING_ANALYSIS].model,
            self.model_configs[CaseStage.TRIAGE].timeout_seconds,
        )

    def _build_case_repository(self) -> CaseRepository:
        if self.case_store_backend == "sqlite":
            return SqliteCaseRepository(db_path=self.sqlite_db_path)
        if self.case_store_backend == "supabase":
            return SupabaseCaseRepository(
                url=env_str("SUPABASE_URL"),
                api_key=env_str("SUPABASE_SERVICE_ROLE_KEY"),
                table=env_str("CAF_SUPABASE_TABLE", "cases") or "cases",
                timeout_seconds=max(1.0, env_float("CAF_SUPABASE_TIMEOUT_SECONDS", 10.0)),
            )
        if self.case_store_backend == "memory":
            return InMemoryCaseRepository()
        raise ValueError(
            f"Unsupported CAF_CASE_STORE_BACKEND='{self.case_store_backend}'. "
            "Allowed values: sqlite, supabase, memory."
        )

    @property
    def model_names(self) -> Dict[str, str]:
        return {stage.value: config.model for stage, config in self.model_configs.items()}

    # ------------------------------------------------------------------
    # Case lifecycle
    # ------------------------------------------------------------------

    def create_case(
        self,
        external_job_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CaseRecord:
        record = CaseRecord(
            case_id=str(uuid4()),
            external_job_id=(external_job_id or "").strip() or None,
            description=(description or "").strip(),
        )
        record.title = derive_title(record)
        saved = self.case_repository.insert_case(record)
        logger.info("Created case %s (external_job_id=%s)", saved.case_id, saved.external_job_id)
        return saved

    def get_case(self, case_id: str) -> CaseRecord:
        return self.case_repository.get_case(case_id)

    def list_cases(self, limit: int = 50) -> List[CaseRecord]:
        return self.case_repository.list_cases(limit=limit)

    def attach_media(self, case_id: str, items: List[MediaItem]) -> CaseRecord:
        record = self.case_repository.get_case(case_id)
        updated = attach_media(record, items)
        return self.case_repository.update_case(updated, expected_version=record.version)

    def build_tenant_message(
        self,
        case_id: str,
        answers: Dict[str, Optional[str]],
    ) -> Tuple[str, List[QuestionItem]]:
        record = self.case_repository.get_case(case_id)
        if record.triage is None:
            raise ValueError("Run triage before composing a tenant message.")
        return build_tenant_message(record.triage.questions_checklist, answers)

    # ------------------------------------------------------------------
    # Stage runs
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        case_id: str,
        stage: CaseStage,
        execute: Callable[[CaseRecord], Awaitable[Any]],
        **apply_kwargs: Any,
    ) -> StageOutcome:
        try:
            record = await asyncio.to_thread(self.case_repository.get_case, case_id)
        except KeyError as exc:
            return ValidationFailure(
                message=_key_error_message(exc),
                field="case_id",
                not_found=True,
                stage=stage,
            )

        expected_version = record.version
        started_at = utc_now()
        result = await execute(record)
        if is_failure(result):
            logger.warning(
                "Stage %s failed for case %s | kind=%s | %s",
                stage.value,
                case_id,
                result.kind,
                result.message,
            )
            return result

        completed_at = utc_now()
        trace = StageTrace(
            stage=stage,
            model=self.model_configs[stage].model,
            started_at=started_at,
            completed_at=completed_at,
        )
        updated = apply_stage_result(
            record,
            stage,
            result,
            trace=trace,
            now=completed_at,
            **apply_kwargs,
        )
        try:
            saved = await asyncio.to_thread(
                self.case_repository.update_case,
                updated,
                expected_version=expected_version,
            )
        except CaseVersionConflictError as exc:
            logger.warning("Stage %s result discarded for case %s: %s", stage.value, case_id, exc)
            return VersionConflict(
                message=str(exc),
                stage=stage,
                expected_version=exc.expected_version,
                actual_version=exc.actual_version,
            )
        except KeyError as exc:
            return ValidationFailure(
                message=_key_error_message(exc),
                field="case_id",
                not_found=True,
                stage=stage,
            )

        logger.info(
            "Stage %s completed for case %s | status=%s | version=%d | %.2fs",
            stage.value,
            case_id,
            saved.status.value,
            saved.version,
            (completed_at - started_at).total_seconds(),
        )
        return StageSuccess(stage=stage, result=result, case=saved)

    async def run_triage(self, case_id: str, description: str) -> StageOutcome:
        return await self._run_stage(
            case_id,
            CaseStage.TRIAGE,
            lambda record: self.triage_executor.run(description),
            description=description,
        )

    async def run_vision_recon(
        self,
        case_id: str,
        context: str,
        media: Optional[List[MediaItem]] = None,
    ) -> StageOutcome:
        return await self._run_stage(
            case_id,
            CaseStage.VISION,
            lambda record: self.vision_executor.run(
                context,
                media if media is not None else record.media,
            ),
        )

    async def run_refinement(
        self,
        case_id: str,
        answers: Dict[str, Optional[str]],
        tenant_text: str = "",
    ) -> StageOutcome:
        return await self._run_stage(
            case_id,
            CaseStage.REFINE,
            lambda record: self.refinement_executor.run(
                description=record.description,
                checklist=record.triage.questions_checklist if record.triage else [],
                answers=answers,
                tenant_text=tenant_text,
                media=record.media,
            ),
        )

    async def run_final_diagnosis(
        self,
        case_id: str,
        answers: Dict[str, Optional[str]],
        tenant_text: str = "",
        vision_recon_raw: Optional[str] = None,
    ) -> StageOutcome:
        def _execute(record: CaseRecord) -> Awaitable[Any]:
            raw = vision_recon_raw
            if not (raw or "").strip() and record.vision is not None:
                raw = record.vision.model_dump_json()
            return self.diagnosis_executor.run(
                description=record.description,
                triage=record.triage,
                answers=answers,
                tenant_text=tenant_text,
                vision_recon_raw=raw,
            )

        return await self._run_stage(case_id, CaseStage.DIAGNOSIS, _execute)

    async def run_pricing(
        self,
        case_id: str,
        diagnosis_index: int,
        description: Optional[str] = None,
    ) -> StageOutcome:
        return await self._run_stage(
            case_id,
            CaseStage.PRICING,
            lambda record: self.pricing_executor.run(
                diagnosis_set=record.diagnosis,
                diagnosis_index=diagnosis_index,
                description=(description or "").strip() or record.description,
            ),
            diagnosis_index=diagnosis_index,
        )

    async def run_pricing_analysis(
        self,
        case_id: str,
        diagnosis_index: Optional[int] = None,
        job_text: Optional[str] = None,
    ) -> StageOutcome:
        async def _execute(record: CaseRecord) -> Any:
            index = diagnosis_index
            if index is None:
                index = record.pricing_diagnosis_index
            diagnosis = None
            if index is not None:
                candidates = record.diagnosis.diagnoses if record.diagnosis else []
                if not 0 <= index < len(candidates):
                    return ValidationFailure(
                        message=f"Diagnosis index {index} is not available for this case.",
                        field="diagnosis_index",
                        stage=CaseStage.PRICING_ANALYSIS,
                    )
                diagnosis = candidates[index]
            return await self.pricing_analysis_executor.run(diagnosis, job_text)

        return await self._run_stage(case_id, CaseStage.PRICING_ANALYSIS, _execute)


# Service-level singleton
copilot_orchestrator = CafCopilotOrchestrator()
