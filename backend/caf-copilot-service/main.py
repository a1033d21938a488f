"""
CAF Copilot Service - FastAPI Application

Endpoints:
  POST /cases
  GET  /cases
  GET  /cases/{case_id}
  POST /uploads
  POST /cases/{case_id}/media
  GET  /media/{name}
  POST /cases/{case_id}/triage
  POST /cases/{case_id}/tenant-message
  POST /cases/{case_id}/vision
  POST /cases/{case_id}/refine
  POST /cases/{case_id}/diagnosis
  POST /cases/{case_id}/pricing
  POST /cases/{case_id}/pricing/analysis
  GET  /health
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from case_repository import CaseVersionConflictError
from env_loader import env_flag, env_int
from media_storage import StoredMedia, resolve_local_media_file
from models import (
    CaseListResponse,
    CaseResponse,
    CreateCaseRequest,
    FinalDiagnosisRequest,
    HealthResponse,
    MediaItem,
    PricingAnalysisRequest,
    PricingRequest,
    RefineRequest,
    StageFailure,
    StageResponse,
    TenantMessageRequest,
    TenantMessageResponse,
    TriageRequest,
    UploadResponse,
    UpstreamFailure,
    ValidationFailure,
    VersionConflict,
    VisionReconRequest,
    is_failure,
)
from orchestrator import StageOutcome, copilot_orchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CAF Copilot Service",
    description="Maintenance case triage, diagnosis and pricing copilot",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_UPLOAD_BYTES = max(1, env_int("CAF_MAX_UPLOAD_BYTES", 15 * 1024 * 1024))
_DIAGNOSTIC_FIELDS = ("raw_text", "cleaned_text", "body", "payload")


def _debug_error_enabled() -> bool:
    return env_flag("CAF_EXPOSE_ERRORS", True)


def _error_detail(prefix: str, exc: Exception) -> str:
    if not _debug_error_enabled():
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _failure_status_code(failure: StageFailure) -> int:
    if isinstance(failure, ValidationFailure):
        return 404 if failure.not_found else 400
    if isinstance(failure, VersionConflict):
        return 409
    if isinstance(failure, UpstreamFailure) and failure.timeout:
        return 504
    return 502


def _failure_detail(failure: StageFailure) -> Dict[str, Any]:
    detail = failure.model_dump(mode="json")
    if not _debug_error_enabled():
        for key in _DIAGNOSTIC_FIELDS:
            detail.pop(key, None)
    return detail


def _stage_response(case_id: str, outcome: StageOutcome) -> StageResponse:
    if is_failure(outcome):
        raise HTTPException(
            status_code=_failure_status_code(outcome),
            detail=_failure_detail(outcome),
        )
    return StageResponse(
        success=True,
        case_id=case_id,
        stage=outcome.stage,
        status=outcome.case.status,
        result=outcome.result.model_dump(mode="json"),
        case=outcome.case,
    )


async def _store_upload(file: UploadFile) -> tuple[StoredMedia, int]:
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(payload) > MAX_UPLOAD_BYTES:
        limit_mb = MAX_UPLOAD_BYTES / (1024 * 1024)
        raise HTTPException(status_code=413, detail=f"File exceeds {limit_mb:.0f}MB upload limit.")
    stored = await asyncio.to_thread(
        copilot_orchestrator.media_storage.store,
        file_bytes=payload,
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
    )
    return stored, len(payload)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="caf-copilot-service",
        case_store_backend=copilot_orchestrator.case_store_backend,
        media_upload_backend=copilot_orchestrator.media_storage.backend_name,
        models=copilot_orchestrator.model_names,
    )


@app.get("/")
async def root() -> dict:
    return {
        "service": "caf-copilot-service",
        "status": "ok",
        "health": "/health",
        "docs": "/docs",
    }


@app.post("/cases", response_model=CaseResponse)
async def create_case(request: CreateCaseRequest) -> CaseResponse:
    try:
        case = await asyncio.to_thread(
            copilot_orchestrator.create_case,
            external_job_id=request.external_job_id,
            description=request.description,
        )
        return CaseResponse(success=True, case=case)
    except Exception as exc:
        logger.exception("Failed to create case: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to create case.", exc),
        ) from exc


@app.get("/cases", response_model=CaseListResponse)
async def list_cases(limit: int = 50) -> CaseListResponse:
    try:
        cases = await asyncio.to_thread(
            copilot_orchestrator.list_cases,
            limit=max(1, min(500, int(limit))),
        )
        return CaseListResponse(success=True, count=len(cases), cases=cases)
    except Exception as exc:
        logger.exception("Failed to list cases: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to list cases.", exc),
        ) from exc


@app.get("/cases/{case_id}", response_model=CaseResponse)
async def get_case(case_id: str) -> CaseResponse:
    try:
        case = await asyncio.to_thread(copilot_orchestrator.get_case, case_id)
        return CaseResponse(success=True, case=case)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/uploads", response_model=UploadResponse)
async def upload_media(file: UploadFile = File(...)) -> UploadResponse:
    try:
        stored, size = await _store_upload(file)
        return UploadResponse(
            success=True,
            url=stored.url,
            content_type=stored.content_type,
            pathname=stored.pathname,
            bytes_uploaded=size,
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to upload media: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to upload media.", exc),
        ) from exc


@app.post("/cases/{case_id}/media", response_model=CaseResponse)
async def attach_case_media(case_id: str, file: UploadFile = File(...)) -> CaseResponse:
    try:
        await asyncio.to_thread(copilot_orchestrator.get_case, case_id)
        stored, _size = await _store_upload(file)
        case = await asyncio.to_thread(
            copilot_orchestrator.attach_media,
            case_id,
            [MediaItem(url=stored.url, content_type=stored.content_type)],
        )
        return CaseResponse(success=True, case=case)
    except HTTPException:
        raise
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CaseVersionConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to attach media to case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to attach media.", exc),
        ) from exc


@app.get("/media/{name}")
async def get_media(name: str) -> FileResponse:
    file_path = resolve_local_media_file(name)
    if file_path is None:
        raise HTTPException(status_code=404, detail=f"Media not found: {name}")
    return FileResponse(path=str(file_path))


@app.post("/cases/{case_id}/triage", response_model=StageResponse)
async def triage_case(case_id: str, request: TriageRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_triage(case_id, request.description)
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to triage case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to triage case.", exc),
        ) from exc


@app.post("/cases/{case_id}/tenant-message", response_model=TenantMessageResponse)
async def tenant_message(case_id: str, request: TenantMessageRequest) -> TenantMessageResponse:
    try:
        message, unanswered = await asyncio.to_thread(
            copilot_orchestrator.build_tenant_message,
            case_id,
            request.answers,
        )
        return TenantMessageResponse(
            success=True,
            case_id=case_id,
            message=message,
            unanswered=unanswered,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/cases/{case_id}/vision", response_model=StageResponse)
async def vision_recon(case_id: str, request: VisionReconRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_vision_recon(
            case_id,
            context=request.context,
            media=request.media,
        )
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to run vision recon for case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to run vision recon.", exc),
        ) from exc


@app.post("/cases/{case_id}/refine", response_model=StageResponse)
async def refine_case(case_id: str, request: RefineRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_refinement(
            case_id,
            answers=request.answers,
            tenant_text=request.tenant_text,
        )
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to refine case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to refine case.", exc),
        ) from exc


@app.post("/cases/{case_id}/diagnosis", response_model=StageResponse)
async def final_diagnosis(case_id: str, request: FinalDiagnosisRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_final_diagnosis(
            case_id,
            answers=request.answers,
            tenant_text=request.tenant_text,
            vision_recon_raw=request.vision_recon_raw,
        )
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to run final diagnosis for case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to run final diagnosis.", exc),
        ) from exc


@app.post("/cases/{case_id}/pricing", response_model=StageResponse)
async def price_case(case_id: str, request: PricingRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_pricing(
            case_id,
            diagnosis_index=request.diagnosis_index,
            description=request.description,
        )
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to price case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to price case.", exc),
        ) from exc


@app.post("/cases/{case_id}/pricing/analysis", response_model=StageResponse)
async def pricing_analysis(case_id: str, request: PricingAnalysisRequest) -> StageResponse:
    try:
        outcome = await copilot_orchestrator.run_pricing_analysis(
            case_id,
            diagnosis_index=request.diagnosis_index,
            job_text=request.job_text,
        )
        return _stage_response(case_id, outcome)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to run pricing analysis for case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to run pricing analysis.", exc),
        ) from exc


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=env_int("PORT", 8080))
