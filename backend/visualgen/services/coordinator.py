import asyncio
import logging
import math
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from visualgen.core import config
from visualgen.core.errors import (
    BatchConflictError,
    BatchValidationError,
    ItemNotRetryableError,
    JobNotFoundError,
    JobStartupError,
)
from visualgen.db.job_store import JobStore
from visualgen.schemas.jobs import BatchOptions, ItemStage, Job, JobItem, JobStatus
from visualgen.schemas.visuals import ALL_VISUAL_TYPES, VisualType, WordContext
from visualgen.services.invoker import InvocationError, ResilientInvoker
from visualgen.services.pacer import CallClass, RatePacer
from visualgen.services.pipeline import ItemPipeline
from visualgen.services.records import RecordStore
from visualgen.utils.time import utc_now

logger = logging.getLogger(__name__)

ContextMap = Dict[str, "asyncio.Future[WordContext]"]


def estimate_seconds(total_items: int, concurrency: int, image_interval: float) -> int:
    per_lane = total_items * config.ESTIMATED_SECONDS_PER_ITEM / max(concurrency, 1)
    return int(math.ceil(max(per_lane, total_items * image_interval)))


class JobCoordinator:
    """Owns batch jobs from submission to a terminal state.

    All writes to a job go through ``_commit_*`` under that job's lock, so
    the store only ever holds whole items. Items run on a bounded pool of
    worker tasks; the stop flag is checked before each dispatch.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: ItemPipeline,
        records: RecordStore,
        invoker: ResilientInvoker,
        pacer: RatePacer,
        max_words: int = config.MAX_BATCH_WORDS,
        retention: int = config.JOB_RETENTION_COUNT,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._records = records
        self._invoker = invoker
        self._pacer = pacer
        self._max_words = max_words
        self._retention = retention
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active_scopes: Dict[str, str] = {}
        self._processing: set[str] = set()
        self._in_flight: Dict[str, int] = {}
        self._retrying: set[tuple[str, str, VisualType]] = set()
        self.started_at = time.time()

    # Submission

    async def start_batch(
        self,
        word_ids: Sequence[str],
        visual_types: Optional[Sequence[VisualType]] = None,
        options: Optional[BatchOptions] = None,
    ) -> str:
        options = options or BatchOptions()
        words = self._normalize_word_ids(word_ids)
        types = list(dict.fromkeys(visual_types if visual_types is not None else ALL_VISUAL_TYPES))
        if not words:
            raise BatchValidationError("no word ids provided")
        if len(words) > self._max_words:
            raise BatchValidationError(f"maximum {self._max_words} words per batch")
        if not types:
            raise BatchValidationError("no visual types requested")

        active = self._active_scopes.get(options.scope)
        if active:
            raise BatchConflictError(options.scope, active)

        job = Job(job_id=f"job_{uuid.uuid4().hex}", options=options)
        self._active_scopes[options.scope] = job.job_id
        try:
            await self._store.put(job)
            await self._store.record_event(
                job.job_id,
                "info",
                "job created",
                {"words": len(words), "visual_types": [t.value for t in types]},
            )
            prefetched: Dict[str, WordContext] = {}
            if options.skip_existing:
                prefetched = await self._prefetch_contexts(words, options.concurrency)
                if not prefetched:
                    await self._fail_startup(job, "word records could not be loaded")
            job.items = [
                JobItem(word_id=word_id, visual_type=visual_type)
                for word_id in words
                for visual_type in types
                if not (
                    word_id in prefetched
                    and visual_type in prefetched[word_id].existing_visuals
                )
            ]
            if not job.items:
                await self._fail_startup(job, "all requested visuals already exist")
            await self._store.put(job)
        except BaseException:
            self._release_scope(options.scope, job.job_id)
            raise

        self._stop_events[job.job_id] = asyncio.Event()
        self._tasks[job.job_id] = asyncio.create_task(
            self._run(job.job_id, options.scope, prefetched)
        )
        logger.info(f"job {job.job_id} queued with {len(job.items)} items")
        return job.job_id

    @staticmethod
    def _normalize_word_ids(word_ids: Sequence[str]) -> List[str]:
        cleaned = [word_id.strip() for word_id in word_ids if word_id and word_id.strip()]
        return list(dict.fromkeys(cleaned))

    async def _fail_startup(self, job: Job, reason: str) -> None:
        job.error = reason
        job.transition(JobStatus.FAILED)
        await self._store.put(job)
        await self._store.record_event(job.job_id, "error", "job failed to start", {"error": reason})
        logger.warning(f"job {job.job_id} failed to start: {reason}")
        raise JobStartupError(job.job_id, reason)

    async def _fetch_context(self, word_id: str) -> WordContext:
        outcome = await self._invoker.invoke(
            lambda: self._records.get_word_context(word_id), label="records"
        )
        return outcome.value

    async def _prefetch_contexts(
        self, word_ids: List[str], concurrency: int
    ) -> Dict[str, WordContext]:
        semaphore = asyncio.Semaphore(concurrency)

        async def fetch(word_id: str) -> Optional[WordContext]:
            async with semaphore:
                try:
                    return await self._fetch_context(word_id)
                except InvocationError as exc:
                    logger.warning(f"word {word_id}: context prefetch failed: {exc}")
                    return None

        results = await asyncio.gather(*(fetch(word_id) for word_id in word_ids))
        return {
            word_id: context
            for word_id, context in zip(word_ids, results)
            if context is not None
        }

    # Run loop

    async def _run(
        self, job_id: str, scope: str, prefetched: Dict[str, WordContext]
    ) -> None:
        try:
            job = await self._store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            loop = asyncio.get_running_loop()
            contexts: ContextMap = {}
            for word_id, context in prefetched.items():
                future: asyncio.Future[WordContext] = loop.create_future()
                future.set_result(context)
                contexts[word_id] = future

            queue: asyncio.Queue[int] = asyncio.Queue()
            for position in range(len(job.items)):
                queue.put_nowait(position)
            self._in_flight[job_id] = 0
            lanes = min(job.options.concurrency, len(job.items))
            workers = [
                asyncio.create_task(self._worker_loop(job, queue, contexts))
                for _ in range(lanes)
            ]
            try:
                await asyncio.gather(*workers)
            except BaseException:
                for worker in workers:
                    worker.cancel()
                raise
            await self._finish(job_id)
        except asyncio.CancelledError:
            logger.warning(f"job {job_id} run cancelled")
            raise
        except Exception as exc:  # pragma: no cover - safety net
            logger.exception(f"job {job_id} run crashed")
            await self._abort(job_id, str(exc))
        finally:
            self._release_scope(scope, job_id)
            self._tasks.pop(job_id, None)
            self._stop_events.pop(job_id, None)
            self._processing.discard(job_id)
            self._in_flight.pop(job_id, None)
        try:
            pruned = await self._store.prune(self._retention)
        except Exception:  # pragma: no cover - retention is best effort
            logger.exception("job retention pass failed")
        else:
            if pruned:
                logger.info(f"pruned {pruned} finished jobs")

    async def _worker_loop(self, job: Job, queue: "asyncio.Queue[int]", contexts: ContextMap) -> None:
        stop_event = self._stop_events[job.job_id]
        while not stop_event.is_set():
            try:
                position = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            item = job.items[position]
            if position == 0 or job.items[position - 1].word_id != item.word_id:
                await self._pacer.wait(CallClass.WORD)
                if stop_event.is_set():
                    return
            await self._dispatch(job.job_id, position, item, contexts)

    async def _dispatch(
        self, job_id: str, position: int, item: JobItem, contexts: ContextMap
    ) -> None:
        await self._commit_processing(job_id)
        started = item.model_copy(update={"started_at": utc_now()})
        await self._commit_item(job_id, position, started)
        self._in_flight[job_id] = self._in_flight.get(job_id, 0) + 1

        async def on_stage(updated: JobItem) -> None:
            await self._commit_item(job_id, position, updated)

        try:
            try:
                context = await self._context_for(item.word_id, contexts)
            except InvocationError as exc:
                result = started.advance(
                    ItemStage.FAILED,
                    error=f"word context unavailable: {exc}",
                    retries=exc.retries,
                )
            else:
                result = await self._pipeline.process(started, context, on_stage=on_stage)
        except Exception as exc:  # pragma: no cover - safety net
            logger.exception(f"job {job_id}: item {item.word_id}/{item.visual_type.value} crashed")
            result = started.advance(ItemStage.FAILED, error=f"unexpected error: {exc}")
        finally:
            self._in_flight[job_id] = max(self._in_flight.get(job_id, 1) - 1, 0)

        await self._commit_item(job_id, position, result)
        if result.stage == ItemStage.FAILED:
            await self._store.record_event(
                job_id,
                "warn",
                "item failed",
                {
                    "word_id": result.word_id,
                    "visual_type": result.visual_type.value,
                    "error": result.error,
                },
            )

    async def _context_for(self, word_id: str, contexts: ContextMap) -> WordContext:
        future = contexts.get(word_id)
        if future is None:
            future = asyncio.ensure_future(self._fetch_context(word_id))
            contexts[word_id] = future
        return await future

    # Commits

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def _commit_item(self, job_id: str, position: int, item: JobItem) -> None:
        async with self._lock_for(job_id):
            await self._store.put_item(job_id, position, item)

    async def _commit_processing(self, job_id: str) -> None:
        if job_id in self._processing:
            return
        async with self._lock_for(job_id):
            if job_id in self._processing:
                return
            job = await self._require(job_id)
            job.transition(JobStatus.PROCESSING)
            await self._store.put(job)
            self._processing.add(job_id)
        await self._store.record_event(job_id, "info", "job processing")
        logger.info(f"job {job_id} processing")

    async def _finish(self, job_id: str) -> None:
        stop_requested = self.is_stop_requested(job_id)
        async with self._lock_for(job_id):
            job = await self._require(job_id)
            job.stop_requested = stop_requested
            if stop_requested:
                job.transition(JobStatus.CANCELLED)
            else:
                job.transition(JobStatus.COMPLETED)
            await self._store.put(job)
        summary = {
            "total": job.total,
            "succeeded": job.succeeded,
            "failed": job.failed,
        }
        await self._store.record_event(job_id, "info", f"job {job.status.value}", summary)
        logger.info(
            f"job {job_id} {job.status.value}: {job.succeeded} succeeded, "
            f"{job.failed} failed, {job.total - job.processed} not processed"
        )

    async def _abort(self, job_id: str, reason: str) -> None:
        try:
            async with self._lock_for(job_id):
                job = await self._store.get(job_id)
                if job is None or job.is_terminal:
                    return
                job.error = reason
                job.transition(JobStatus.FAILED)
                await self._store.put(job)
            await self._store.record_event(job_id, "error", "job aborted", {"error": reason})
        except Exception:  # pragma: no cover - store is already failing
            logger.exception(f"job {job_id}: could not record abort")

    async def _require(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _release_scope(self, scope: str, job_id: str) -> None:
        if self._active_scopes.get(scope) == job_id:
            del self._active_scopes[scope]

    # Control

    def is_active(self, job_id: str) -> bool:
        return job_id in self._tasks

    def is_stop_requested(self, job_id: str) -> bool:
        event = self._stop_events.get(job_id)
        return bool(event and event.is_set())

    async def request_stop(self, job_id: str) -> bool:
        """Ask a running job to stop dispatching; returns False if it is not running."""
        event = self._stop_events.get(job_id)
        if event is None or not self.is_active(job_id):
            return False
        if not event.is_set():
            event.set()
            await self._store.record_event(job_id, "info", "stop requested")
            logger.info(f"job {job_id} stop requested")
        return True

    async def stop_job(self, job_id: str) -> JobStatus:
        job = await self._require(job_id)
        if not job.is_terminal:
            await self.request_stop(job_id)
        return job.status

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def retry_item(
        self, job_id: str, word_id: str, visual_type: VisualType
    ) -> JobItem:
        """Run the pipeline again for one failed item of a finished job."""
        job = await self._require(job_id)
        if not job.is_terminal or self.is_active(job_id):
            raise ItemNotRetryableError("job is still running", job_id)
        position = job.index_of(word_id, visual_type)
        if position is None:
            raise ItemNotRetryableError(
                f"job has no item {word_id}/{visual_type.value}", job_id
            )
        if job.items[position].stage != ItemStage.FAILED:
            raise ItemNotRetryableError(
                f"item {word_id}/{visual_type.value} is {job.items[position].stage.value}",
                job_id,
            )
        key = (job_id, word_id, visual_type)
        if key in self._retrying:
            raise ItemNotRetryableError("item is already being retried", job_id)

        self._retrying.add(key)
        try:
            fresh = JobItem(word_id=word_id, visual_type=visual_type)
            try:
                context = await self._fetch_context(word_id)
            except InvocationError as exc:
                result = fresh.advance(
                    ItemStage.FAILED,
                    error=f"word context unavailable: {exc}",
                    retries=exc.retries,
                )
            else:
                result = await self._pipeline.process(fresh, context)
            await self._commit_item(job_id, position, result)
        finally:
            self._retrying.discard(key)

        await self._store.record_event(
            job_id,
            "info",
            "item retried",
            {
                "word_id": word_id,
                "visual_type": visual_type.value,
                "stage": result.stage.value,
                "error": result.error,
            },
        )
        return result

    async def recover_interrupted(self, limit: int = 200) -> int:
        """Fail stored jobs that were left open by a previous process."""
        recovered = 0
        for job in await self._store.list(limit):
            if job.is_terminal or self.is_active(job.job_id):
                continue
            await self._abort(job.job_id, "interrupted by backend restart")
            recovered += 1
        if recovered:
            logger.warning(f"marked {recovered} interrupted jobs as failed")
        return recovered

    async def shutdown(self, timeout: float = 30.0) -> None:
        for job_id in list(self._tasks):
            await self.request_stop(job_id)
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def status_snapshot(self) -> Dict[str, Any]:
        in_flight = sum(self._in_flight.values())
        return {
            "uptime_sec": int(time.time() - self.started_at),
            "active_jobs": sorted(self._tasks),
            "active_scopes": dict(self._active_scopes),
            "items_in_flight": in_flight,
            "pacing": {
                call_class.value: self._pacer.interval(call_class)
                for call_class in CallClass
            },
            "retry_policy": self._invoker.policy.model_dump(),
        }
