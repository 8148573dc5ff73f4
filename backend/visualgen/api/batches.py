from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from visualgen.api.deps import get_services, verify_token
from visualgen.core.errors import (
    BatchConflictError,
    BatchValidationError,
    ItemNotRetryableError,
    JobNotFoundError,
    JobStartupError,
)
from visualgen.schemas.jobs import (
    BatchAccepted,
    BatchCreate,
    ItemResult,
    JobSnapshot,
    StopResponse,
)
from visualgen.schemas.visuals import VisualType
from visualgen.services.coordinator import estimate_seconds
from visualgen.services.factory import Services
from visualgen.services.pacer import CallClass

router = APIRouter()


@router.post("/batches", response_model=BatchAccepted, status_code=202)
async def start_batch(
    request: BatchCreate,
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> BatchAccepted:
    try:
        job_id = await services.coordinator.start_batch(
            request.word_ids, request.visual_types, request.options
        )
    except BatchValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BatchConflictError as exc:
        raise HTTPException(
            status_code=409, detail={"message": str(exc), "job_id": exc.job_id}
        ) from exc
    except JobStartupError as exc:
        raise HTTPException(
            status_code=422, detail={"message": exc.reason, "job_id": exc.job_id}
        ) from exc
    snapshot = await services.reporter.snapshot(job_id)
    return BatchAccepted(
        job_id=job_id,
        status=snapshot.status,
        total_items=snapshot.total,
        estimated_seconds=estimate_seconds(
            snapshot.total,
            request.options.concurrency,
            services.pacer.interval(CallClass.IMAGE),
        ),
    )


@router.get("/batches")
async def list_batches(
    limit: int = Query(default=50, ge=1, le=200),
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    jobs = await services.reporter.list_jobs(limit)
    return {"jobs": [job.model_dump() for job in jobs]}


@router.get("/batches/{job_id}", response_model=JobSnapshot)
async def get_batch(
    job_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> JobSnapshot:
    try:
        return await services.reporter.snapshot(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc


@router.get("/batches/{job_id}/events")
async def list_batch_events(
    job_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    try:
        events = await services.reporter.events(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    return {"events": [event.model_dump() for event in events]}


@router.post("/batches/{job_id}/stop", response_model=StopResponse)
async def stop_batch(
    job_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> StopResponse:
    try:
        return await services.reporter.request_stop(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc


@router.post(
    "/batches/{job_id}/items/{word_id}/{visual_type}/retry",
    response_model=ItemResult,
)
async def retry_batch_item(
    job_id: str,
    word_id: str,
    visual_type: VisualType,
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> ItemResult:
    try:
        item = await services.coordinator.retry_item(job_id, word_id, visual_type)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    except ItemNotRetryableError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ItemResult(
        word_id=item.word_id,
        visual_type=item.visual_type,
        stage=item.stage,
        error=item.error,
        artifact=item.artifact,
        fallback_used=item.fallback_used,
        retries=item.retries,
    )
