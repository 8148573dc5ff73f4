import pytest

from visualgen.db import connection
from visualgen.db.job_store import MemoryJobStore, SqliteJobStore
from visualgen.schemas.jobs import BatchOptions, ItemStage, Job, JobItem, JobStatus
from visualgen.schemas.visuals import VisualType


def make_job(job_id: str, created_at: str, status: JobStatus = JobStatus.COMPLETED) -> Job:
    return Job(
        job_id=job_id,
        status=status,
        created_at=created_at,
        options=BatchOptions(concurrency=3, scope="nightly"),
        items=[
            JobItem(word_id="apple", visual_type=VisualType.CONCEPT),
            JobItem(word_id="apple", visual_type=VisualType.RHYME),
        ],
    )


async def exercise_store(store) -> None:
    job = make_job("job_a", "2026-01-01T00:00:00Z", JobStatus.PENDING)
    await store.put(job)

    loaded = await store.get("job_a")
    assert loaded == job
    assert await store.get("job_missing") is None

    failed = loaded.items[1].advance(ItemStage.FAILED, error="image synthesis failed")
    await store.put_item("job_a", 1, failed)
    reloaded = await store.get("job_a")
    assert reloaded.items[0].stage == ItemStage.CONTENT_PENDING
    assert reloaded.items[1].error == "image synthesis failed"
    assert reloaded.options.scope == "nightly"
    assert reloaded.options.concurrency == 3

    await store.record_event("job_a", "info", "job created", {"words": 1})
    await store.record_event("job_a", "warn", "item failed")
    events = await store.events("job_a")
    assert [event["message"] for event in events] == ["job created", "item failed"]
    assert events[0]["meta"] == {"words": 1}


async def exercise_prune(store) -> None:
    await store.put(make_job("job_old", "2026-01-01T00:00:00Z"))
    await store.put(make_job("job_mid", "2026-01-02T00:00:00Z", JobStatus.CANCELLED))
    await store.put(make_job("job_new", "2026-01-03T00:00:00Z"))
    await store.put(make_job("job_running", "2025-12-31T00:00:00Z", JobStatus.PROCESSING))
    await store.record_event("job_old", "info", "job created")

    assert await store.prune(2) == 1

    assert await store.get("job_old") is None
    assert await store.events("job_old") == []
    assert await store.get("job_running") is not None
    listed = [job.job_id for job in await store.list()]
    assert listed == ["job_new", "job_mid", "job_running"]
    assert [job.job_id for job in await store.list(limit=1)] == ["job_new"]


async def exercise_same_second_ties(store) -> None:
    for job_id in ("job_1", "job_2", "job_3"):
        await store.put(make_job(job_id, "2026-01-01T00:00:00Z"))
    await store.put(make_job("job_1", "2026-01-01T00:00:00Z", JobStatus.FAILED))

    assert [job.job_id for job in await store.list()] == ["job_3", "job_2", "job_1"]

    assert await store.prune(2) == 1
    assert await store.get("job_1") is None
    assert [job.job_id for job in await store.list()] == ["job_3", "job_2"]


@pytest.mark.anyio
async def test_memory_store_round_trip():
    await exercise_store(MemoryJobStore())


@pytest.mark.anyio
async def test_memory_store_hands_out_copies():
    store = MemoryJobStore()
    job = make_job("job_a", "2026-01-01T00:00:00Z")
    await store.put(job)
    job.items.clear()
    loaded = await store.get("job_a")
    loaded.status = JobStatus.FAILED
    again = await store.get("job_a")
    assert again.total == 2
    assert again.status == JobStatus.COMPLETED


@pytest.mark.anyio
async def test_memory_store_prune():
    await exercise_prune(MemoryJobStore())


@pytest.mark.anyio
async def test_sqlite_store_round_trip(tmp_path):
    await connection.connect_db(str(tmp_path / "jobs.db"))
    try:
        await exercise_store(SqliteJobStore())
    finally:
        await connection.close_db()


@pytest.mark.anyio
async def test_sqlite_store_prune(tmp_path):
    await connection.connect_db(str(tmp_path / "jobs.db"))
    try:
        await exercise_prune(SqliteJobStore())
    finally:
        await connection.close_db()


@pytest.mark.anyio
async def test_sqlite_store_survives_reconnect(tmp_path):
    path = str(tmp_path / "jobs.db")
    await connection.connect_db(path)
    try:
        await SqliteJobStore().put(make_job("job_a", "2026-01-01T00:00:00Z"))
    finally:
        await connection.close_db()

    await connection.connect_db(path)
    try:
        job = await SqliteJobStore().get("job_a")
    finally:
        await connection.close_db()
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert [item.visual_type for item in job.items] == [VisualType.CONCEPT, VisualType.RHYME]


@pytest.mark.anyio
async def test_memory_store_orders_same_second_jobs_by_insertion():
    await exercise_same_second_ties(MemoryJobStore())


@pytest.mark.anyio
async def test_sqlite_store_orders_same_second_jobs_by_insertion(tmp_path):
    await connection.connect_db(str(tmp_path / "jobs.db"))
    try:
        await exercise_same_second_ties(SqliteJobStore())
    finally:
        await connection.close_db()
