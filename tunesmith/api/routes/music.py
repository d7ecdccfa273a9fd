"""
Music generation API.

Start, poll, list and delete generation jobs.  Requesters are identified by
the X-Device-ID header; job creation is rate limited by device ID (IP when
the header is absent).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from tunesmith.auth.dependencies import optional_device_id, require_device_id
from tunesmith.config import settings
from tunesmith.db import get_db
from tunesmith.models.requests import GenerationRequest
from tunesmith.models.responses import DurationOption, EngineStatusView, JobListView, JobView
from tunesmith.services import status as status_service
from tunesmith.services.errors import DuplicateInFlightError, MusicEngineError
from tunesmith.services.orchestrator import GenerationOrchestrator, get_orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


def _job_rate_limit_key(request: Request) -> str:
    """Rate limit key: by X-Device-ID when present, else by IP."""
    device_id = (request.headers.get("X-Device-ID") or "").strip()
    if device_id:
        return f"device:{device_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=_job_rate_limit_key)


def _http_error(exc: MusicEngineError) -> HTTPException:
    detail: str | dict[str, str] = exc.user_message
    if isinstance(exc, DuplicateInFlightError):
        detail = {"message": exc.user_message, "existingJobId": exc.existing_job_id}
    return HTTPException(status_code=exc.http_status, detail=detail)


@router.post(
    "/music/jobs",
    response_model=JobView,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        200: {"description": "Job finished (wait=true)"},
        400: {"description": "Invalid X-Device-ID"},
        409: {"description": "Requester already has a pending job"},
        422: {"description": "Invalid generation request"},
        429: {"description": "Rate limit exceeded"},
    },
)
@limiter.limit(settings.job_create_rate_limit)
async def create_generation_job(
    request: Request,
    response: Response,
    body: GenerationRequest,
    wait: bool = Query(False, description="Block until the job is completed or failed"),
    device_id: str | None = Depends(optional_device_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobView:
    """
    Start a generation job.

    By default the job runs in the background and the pending view is
    returned with 202; poll ``GET /music/jobs/{jobId}``.  With ``wait=true``
    the call returns the terminal view with 200 (the durable-storage copy
    still happens in the background).
    """
    try:
        if wait:
            view = await orchestrator.create_job(body, requester_id=device_id)
            response.status_code = status.HTTP_200_OK
            return view
        return await orchestrator.submit_job(body, requester_id=device_id)
    except MusicEngineError as e:
        raise _http_error(e)


@router.get("/music/jobs", response_model=JobListView)
async def list_generation_jobs(
    style_tag: str | None = Query(None, alias="styleTag"),
    instrumental: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=status_service.MAX_PAGE_SIZE),
    device_id: str = Depends(require_device_id),
    db: AsyncSession = Depends(get_db),
) -> JobListView:
    """Newest-first page of the requester's jobs."""
    return await status_service.list_jobs(
        db,
        requester_id=device_id,
        style_tag=style_tag,
        instrumental=instrumental,
        page=page,
        limit=limit,
    )


@router.get(
    "/music/jobs/{job_id}",
    response_model=JobView,
    responses={404: {"description": "Job not found"}},
)
async def get_generation_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
) -> JobView:
    """Current state of a job; ``resultUrl`` appears once it is completed."""
    try:
        return await status_service.get_status(db, job_id)
    except MusicEngineError as e:
        raise _http_error(e)


@router.delete(
    "/music/jobs/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        400: {"description": "Missing or invalid X-Device-ID"},
        403: {"description": "Job belongs to another requester"},
        404: {"description": "Job not found"},
    },
)
async def delete_generation_job(
    job_id: str,
    device_id: str = Depends(require_device_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        await orchestrator.delete_job(job_id, device_id)
    except MusicEngineError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/music/engine/status", response_model=EngineStatusView)
async def get_engine_status(
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> EngineStatusView:
    """Provider / text-generation / storage configuration and breaker state."""
    return status_service.engine_status(
        orchestrator.provider,
        orchestrator.lyrics,
        orchestrator.storage,
    )


@router.get("/music/durations", response_model=list[DurationOption])
async def get_durations() -> list[DurationOption]:
    return status_service.duration_options()
