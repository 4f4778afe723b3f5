from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from .auth import caller_role, require_admin
from .errors import (
    GatewayError,
    InsufficientResourcesError,
    JobNotFoundError,
    ModelNotFoundError,
    ResultExpiredError,
    StagingError,
    StoreError,
    ValidationError,
)
from .jobs import JobService, extension_of, validate_extraction
from .ollama import OllamaClient
from .schemas import (
    AddModelRequest,
    ChatRequest,
    CreateJobResponse,
    DeleteJobsResponse,
    GenerationRequest,
    GenerationResponse,
    JobListResponse,
    JobResultResponse,
    JobStatusResponse,
    JobView,
    MessageResponse,
    ModelListResponse,
)

log = logging.getLogger("llm-jobs")
router = APIRouter(dependencies=[Depends(caller_role)])
admin_router = APIRouter(dependencies=[Depends(require_admin)])
MAX_UPLOAD_BYTES = 20_000_000  # ~20MB


def get_jobs(request: Request) -> JobService:
    return request.app.state.jobs


def get_client(request: Request) -> OllamaClient:
    return request.app.state.client


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail="Job not found")
    if isinstance(exc, ResultExpiredError):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, ModelNotFoundError):
        return HTTPException(status_code=404, detail="Model not found")
    if isinstance(exc, InsufficientResourcesError):
        return HTTPException(status_code=507, detail="Model requires more system memory")
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (StoreError, StagingError)):
        log.error("request failed: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    raise exc


async def _read_upload(file: UploadFile) -> bytes:
    raw: bytes = await file.read()
    log.info("upload bytes=%d name=%s", len(raw), file.filename)
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large (max 20MB)")
    if not raw:
        raise HTTPException(status_code=400, detail="File is required")
    return raw


async def _event_stream(lines: AsyncIterator[str]) -> StreamingResponse:
    # Pull the first line before answering so backend errors still get a proper status code.
    try:
        first: Optional[str] = await lines.__anext__()
    except StopAsyncIteration:
        first = None
    except GatewayError as e:
        raise http_error(e)

    async def relay() -> AsyncIterator[str]:
        if first is not None:
            yield f"data: {first}\n\n"
        try:
            async for line in lines:
                yield f"data: {line}\n\n"
        except GatewayError as e:
            log.warning("stream aborted by backend error: %s", e)
            yield f"data: {json.dumps({'error': str(e)})}\n\n"

    return StreamingResponse(
        relay(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------------- live proxy ----------------

@router.post("/llm/generate", response_model=GenerationResponse)
async def generate(req: GenerationRequest, client: OllamaClient = Depends(get_client)) -> Dict[str, Any]:
    if not req.prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")
    try:
        return await client.generate(req.model, req.prompt)
    except (GatewayError, ValidationError) as e:
        raise http_error(e)


@router.post("/llm/generate/stream")
async def generate_stream(req: GenerationRequest, client: OllamaClient = Depends(get_client)) -> StreamingResponse:
    if not req.prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")
    try:
        lines = client.stream_generate(req.model, req.prompt)
    except ValidationError as e:
        raise http_error(e)
    return await _event_stream(lines)


@router.post("/llm/chat", response_model=GenerationResponse)
async def chat(req: ChatRequest, client: OllamaClient = Depends(get_client)) -> Dict[str, Any]:
    if not req.messages:
        raise HTTPException(status_code=400, detail="Messages are required")
    try:
        return await client.chat(req.model, [m.model_dump() for m in req.messages])
    except (GatewayError, ValidationError) as e:
        raise http_error(e)


@router.post("/llm/chat/stream")
async def chat_stream(req: ChatRequest, client: OllamaClient = Depends(get_client)) -> StreamingResponse:
    if not req.messages:
        raise HTTPException(status_code=400, detail="Messages are required")
    try:
        lines = client.stream_chat(req.model, [m.model_dump() for m in req.messages])
    except ValidationError as e:
        raise http_error(e)
    return await _event_stream(lines)


@router.post("/ocr/extract/image")
async def extract_image(
    model: str = Form(""),
    file: UploadFile = File(...),
    client: OllamaClient = Depends(get_client),
) -> Dict[str, Any]:
    try:
        validate_extraction(model, extension_of(file.filename or ""))
    except ValidationError as e:
        raise http_error(e)
    raw = await _read_upload(file)
    try:
        return await client.extract_text(model, raw, file.filename or "upload")
    except GatewayError as e:
        raise http_error(e)


# ---------------- models ----------------

@router.get("/models", response_model=ModelListResponse)
async def list_models(client: OllamaClient = Depends(get_client)) -> ModelListResponse:
    try:
        return ModelListResponse(models=await client.list_models())
    except GatewayError as e:
        raise http_error(e)


@admin_router.post("/models/add")
async def add_model(req: AddModelRequest, client: OllamaClient = Depends(get_client)) -> Dict[str, Any]:
    try:
        return await client.add_model(req.model)
    except (GatewayError, ValidationError) as e:
        raise http_error(e)


@admin_router.delete("/models/{model}", response_model=MessageResponse)
async def delete_model(model: str, client: OllamaClient = Depends(get_client)) -> MessageResponse:
    try:
        await client.delete_model(model)
    except (GatewayError, ValidationError) as e:
        raise http_error(e)
    return MessageResponse(message="Model deleted successfully")


# ---------------- jobs ----------------

@router.post("/jobs/generate", response_model=CreateJobResponse, status_code=201)
async def create_generation_job(req: GenerationRequest, jobs: JobService = Depends(get_jobs)) -> CreateJobResponse:
    try:
        job = await jobs.submit_generation(req.model, req.prompt)
    except (ValidationError, StoreError) as e:
        raise http_error(e)
    return CreateJobResponse(id=job.id, status=job.status, message="Generation job created successfully")


@router.post("/jobs/multimodal_extraction", response_model=CreateJobResponse, status_code=201)
async def create_extraction_job(
    model: str = Form(""),
    file: UploadFile = File(...),
    jobs: JobService = Depends(get_jobs),
) -> CreateJobResponse:
    extension = extension_of(file.filename or "")
    try:
        validate_extraction(model, extension)
    except ValidationError as e:
        raise http_error(e)
    raw = await _read_upload(file)
    try:
        job = await jobs.submit_extraction(model, raw, extension)
    except (ValidationError, StagingError, StoreError) as e:
        raise http_error(e)
    return CreateJobResponse(id=job.id, status=job.status, message="Multimodal extraction job created successfully")


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
async def get_status(job_id: str, jobs: JobService = Depends(get_jobs)) -> JobStatusResponse:
    try:
        status = await jobs.get_status(job_id)
    except (JobNotFoundError, StoreError) as e:
        raise http_error(e)
    return JobStatusResponse(id=job_id, status=status)


@router.get("/jobs/{job_id}/result", response_model=JobResultResponse, response_model_exclude_none=True)
async def get_result(job_id: str, jobs: JobService = Depends(get_jobs)) -> JobResultResponse:
    try:
        res = await jobs.get_result(job_id)
    except (JobNotFoundError, ResultExpiredError, StoreError) as e:
        raise http_error(e)
    return JobResultResponse(id=res.id, status=res.status, result=res.result)


@admin_router.get("/jobs", response_model=JobListResponse, response_model_exclude_none=True)
async def list_jobs(
    limit: int = Query(50, ge=1, le=1000),
    with_result: bool = Query(False),
    jobs: JobService = Depends(get_jobs),
) -> JobListResponse:
    try:
        rows = await jobs.list_recent(limit, include_result=with_result)
    except StoreError as e:
        raise http_error(e)
    return JobListResponse(jobs=[JobView.from_job(j) for j in rows])


@admin_router.delete("/jobs", response_model=DeleteJobsResponse)
async def delete_jobs(jobs: JobService = Depends(get_jobs)) -> DeleteJobsResponse:
    try:
        deleted = await jobs.empty()
    except StoreError as e:
        raise http_error(e)
    return DeleteJobsResponse(message="All jobs deleted successfully", deleted=deleted)
