import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import WORDS, make_context
from visualgen.api import deps
from visualgen.main import app
from visualgen.schemas.visuals import VisualType
from visualgen.services.factory import Services


@pytest.fixture
def services(store, invoker, pacer, coordinator, reporter) -> Services:
    return Services(
        store=store,
        invoker=invoker,
        pacer=pacer,
        coordinator=coordinator,
        reporter=reporter,
    )


@pytest.fixture
async def async_client(services):
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    del app.state.services


@pytest.mark.anyio
async def test_submit_and_poll_batch(async_client, coordinator):
    response = await async_client.post(
        "/batches", json={"word_ids": WORDS, "visual_types": ["CONCEPT"]}
    )
    assert response.status_code == 202
    accepted = response.json()
    assert accepted["total_items"] == 3
    assert accepted["status"] == "pending"
    assert accepted["estimated_seconds"] == 15

    await coordinator.wait(accepted["job_id"])
    response = await async_client.get(f"/batches/{accepted['job_id']}")
    assert response.status_code == 200
    snapshot = response.json()
    assert snapshot["status"] == "completed"
    assert snapshot["succeeded"] == 3
    assert len(snapshot["per_item_results"]) == 3

    response = await async_client.get("/batches")
    assert [job["job_id"] for job in response.json()["jobs"]] == [accepted["job_id"]]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body, status_code",
    [
        ({"word_ids": []}, 400),
        ({"word_ids": ["apple"], "visual_types": []}, 400),
        ({"word_ids": ["apple"], "visual_types": ["PHOTO"]}, 422),
        ({"word_ids": ["apple"], "options": {"concurrency": 20}}, 422),
    ],
)
async def test_submit_rejects_bad_requests(async_client, body, status_code):
    response = await async_client.post("/batches", json=body)
    assert response.status_code == status_code


@pytest.fixture
def gate(images) -> asyncio.Event:
    """Holds every image call until the test opens the gate."""
    event = asyncio.Event()

    async def hold() -> None:
        await event.wait()

    images.hook = hold
    return event


@pytest.mark.anyio
async def test_submit_conflicts_with_active_job(async_client, coordinator, gate):
    first = await async_client.post("/batches", json={"word_ids": WORDS})
    second = await async_client.post("/batches", json={"word_ids": ["apple"]})
    assert second.status_code == 409
    assert second.json()["detail"]["job_id"] == first.json()["job_id"]
    gate.set()
    await coordinator.wait(first.json()["job_id"])


@pytest.mark.anyio
async def test_submit_with_nothing_to_do(async_client, records):
    records.contexts["apple"] = make_context("apple", existing=list(VisualType))
    response = await async_client.post("/batches", json={"word_ids": ["apple"]})
    assert response.status_code == 422
    assert response.json()["detail"]["message"] == "all requested visuals already exist"


@pytest.mark.anyio
async def test_stop_batch(async_client, coordinator, gate):
    job_id = (await async_client.post("/batches", json={"word_ids": WORDS})).json()["job_id"]

    response = await async_client.post(f"/batches/{job_id}/stop")
    assert response.status_code == 200
    body = response.json()
    assert body["job_id"] == job_id
    assert body["status"] in ("pending", "processing")
    assert body["stop_requested"] is True

    gate.set()
    await coordinator.wait(job_id)
    snapshot = (await async_client.get(f"/batches/{job_id}")).json()
    assert snapshot["status"] == "cancelled"
    assert snapshot["stop_requested"] is True
    assert snapshot["processed"] < snapshot["total"]


@pytest.mark.anyio
async def test_retry_failed_item(async_client, coordinator, images):
    images.permanent.add("apple")
    job_id = (
        await async_client.post("/batches", json={"word_ids": ["apple"], "visual_types": ["CONCEPT"]})
    ).json()["job_id"]
    await coordinator.wait(job_id)

    images.permanent.clear()
    response = await async_client.post(f"/batches/{job_id}/items/apple/CONCEPT/retry")
    assert response.status_code == 200
    assert response.json()["stage"] == "succeeded"

    response = await async_client.post(f"/batches/{job_id}/items/apple/CONCEPT/retry")
    assert response.status_code == 409


@pytest.mark.anyio
async def test_batch_events_trace_the_run(async_client, coordinator, images):
    images.permanent.add("banana")
    job_id = (
        await async_client.post("/batches", json={"word_ids": WORDS, "visual_types": ["CONCEPT"]})
    ).json()["job_id"]
    await coordinator.wait(job_id)

    response = await async_client.get(f"/batches/{job_id}/events")
    assert response.status_code == 200
    events = response.json()["events"]
    messages = [event["message"] for event in events]
    assert messages[0] == "job created"
    assert messages[-1] == "job completed"
    assert messages.count("item failed") == 1
    assert all(event["created_at"] for event in events)


@pytest.mark.anyio
async def test_unknown_job_is_404(async_client):
    assert (await async_client.get("/batches/job_missing")).status_code == 404
    assert (await async_client.post("/batches/job_missing/stop")).status_code == 404
    assert (await async_client.get("/batches/job_missing/events")).status_code == 404
    response = await async_client.post("/batches/job_missing/items/apple/CONCEPT/retry")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_retry_metrics(async_client, coordinator, images):
    images.transient["banana"] = 1
    job_id = (
        await async_client.post("/batches", json={"word_ids": WORDS, "visual_types": ["CONCEPT"]})
    ).json()["job_id"]
    await coordinator.wait(job_id)

    metrics = (await async_client.get("/metrics/retries")).json()
    assert metrics["by_label"]["image"]["total_retries"] == 1
    assert metrics["failed_requests"] == 0


@pytest.mark.anyio
async def test_health_and_status(async_client):
    health = await async_client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    status = await async_client.get("/status")
    assert status.status_code == 200
    assert status.json()["active_jobs"] == []


@pytest.mark.anyio
async def test_token_is_enforced_when_configured(async_client, monkeypatch):
    monkeypatch.setattr(deps, "BACKEND_TOKEN", "secret")
    assert (await async_client.get("/health")).status_code == 401
    response = await async_client.get("/health", headers={"X-Backend-Token": "secret"})
    assert response.status_code == 200
