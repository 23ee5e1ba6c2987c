from __future__ import annotations

from fastapi import APIRouter, File, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from compliance.errors import ApiError
from compliance.routes._deps import entity_ref_from_path, runtime_from_request, trace_id_from_request
from compliance.schemas import success_envelope

router = APIRouter(prefix="/api/v1", tags=["analysis"])


@router.post("/entities/{entity_type}/{entity_id}/quality-documents")
async def upload_quality_document(
    entity_type: str,
    entity_id: str,
    request: Request,
    file: UploadFile = File(...),
):
    entity_ref = entity_ref_from_path(entity_type, entity_id)
    file_bytes = await file.read()
    coordinator = runtime_from_request(request).coordinator
    stored, outcome = await run_in_threadpool(
        coordinator.upload_document,
        entity_ref,
        filename=file.filename or "upload.bin",
        content=file_bytes,
        content_type=file.content_type,
    )
    data = {"document": stored, "analysis": outcome.as_dict()}
    message = "analysis deferred" if not outcome.accepted else "analysis queued"
    return JSONResponse(
        status_code=202,
        content=success_envelope(jsonable_encoder(data), trace_id_from_request(request), message=message),
    )


@router.post("/entities/{entity_type}/{entity_id}/analyze")
def analyze_entity(
    entity_type: str,
    entity_id: str,
    request: Request,
    timeout_s: float | None = Query(default=None, ge=0, le=600),
):
    entity_ref = entity_ref_from_path(entity_type, entity_id)
    outcome = runtime_from_request(request).coordinator.request_analysis(entity_ref, timeout_s=timeout_s)
    status_code = 202 if outcome.timed_out else 200
    return JSONResponse(
        status_code=status_code,
        content=success_envelope(jsonable_encoder(outcome.as_dict()), trace_id_from_request(request)),
    )


@router.get("/entities/{entity_type}/{entity_id}/analysis-results/latest")
def latest_analysis_result(entity_type: str, entity_id: str, request: Request):
    entity_ref = entity_ref_from_path(entity_type, entity_id)
    record = runtime_from_request(request).coordinator.latest_result(entity_ref)
    if record is None:
        raise ApiError(
            code="ANALYSIS_RESULT_NOT_FOUND",
            message=f"no analysis results for {entity_ref.key}",
            error_class="not_found",
            retryable=False,
            http_status=404,
        )
    return success_envelope(record, trace_id_from_request(request))


@router.get("/analysis-results/{result_id}")
def get_analysis_result(result_id: str, request: Request):
    record = runtime_from_request(request).coordinator.get_result(result_id)
    return success_envelope(record, trace_id_from_request(request))


@router.get("/internal/analysis/status")
def analysis_status(request: Request):
    return success_envelope(runtime_from_request(request).status(), trace_id_from_request(request))
