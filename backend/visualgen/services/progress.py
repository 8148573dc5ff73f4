from typing import List

from visualgen.core.errors import JobNotFoundError
from visualgen.db.job_store import JobStore
from visualgen.schemas.jobs import (
    ItemRef,
    ItemResult,
    JobEvent,
    Job,
    JobSnapshot,
    JobSummary,
    StopResponse,
)
from visualgen.services.coordinator import JobCoordinator
from visualgen.utils.time import parse_iso_to_epoch


def build_snapshot(job: Job, stop_requested: bool = False) -> JobSnapshot:
    in_progress = [
        ItemRef(word_id=item.word_id, visual_type=item.visual_type, stage=item.stage)
        for item in job.items
        if item.started_at is not None and not item.is_terminal
    ]
    results = [
        ItemResult(
            word_id=item.word_id,
            visual_type=item.visual_type,
            stage=item.stage,
            error=item.error,
            artifact=item.artifact,
            fallback_used=item.fallback_used,
            retries=item.retries,
        )
        for item in job.items
    ]
    return JobSnapshot(
        job_id=job.job_id,
        status=job.status,
        total=job.total,
        processed=job.processed,
        succeeded=job.succeeded,
        failed=job.failed,
        currently_processing=in_progress,
        per_item_results=results,
        stop_requested=job.stop_requested or stop_requested,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def summarize(job: Job) -> JobSummary:
    duration = None
    if job.started_at and job.completed_at:
        duration = parse_iso_to_epoch(job.completed_at) - parse_iso_to_epoch(job.started_at)
    return JobSummary(
        job_id=job.job_id,
        status=job.status,
        scope=job.options.scope,
        total=job.total,
        processed=job.processed,
        succeeded=job.succeeded,
        failed=job.failed,
        created_at=job.created_at,
        completed_at=job.completed_at,
        duration_seconds=duration,
    )


class ProgressReporter:
    """Read side of the job store. Never writes job state."""

    def __init__(self, store: JobStore, coordinator: JobCoordinator) -> None:
        self._store = store
        self._coordinator = coordinator

    async def _require(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def snapshot(self, job_id: str) -> JobSnapshot:
        job = await self._require(job_id)
        return build_snapshot(job, self._coordinator.is_stop_requested(job_id))

    async def request_stop(self, job_id: str) -> StopResponse:
        status = await self._coordinator.stop_job(job_id)
        return StopResponse(
            job_id=job_id,
            status=status,
            stop_requested=self._coordinator.is_stop_requested(job_id),
        )

    async def list_jobs(self, limit: int = 50) -> List[JobSummary]:
        return [summarize(job) for job in await self._store.list(limit)]

    async def events(self, job_id: str) -> List[JobEvent]:
        await self._require(job_id)
        return [JobEvent(**event) for event in await self._store.events(job_id)]
