from dataclasses import dataclass
from typing import Optional

import httpx

from visualgen.core import config
from visualgen.db.job_store import JobStore, MemoryJobStore, SqliteJobStore
from visualgen.services.content import AnthropicContentClient
from visualgen.services.coordinator import JobCoordinator
from visualgen.services.http_client import create_client
from visualgen.services.images import StabilityImageClient
from visualgen.services.invoker import ResilientInvoker, RetryPolicy
from visualgen.services.pacer import RatePacer
from visualgen.services.pipeline import ItemPipeline
from visualgen.services.progress import ProgressReporter
from visualgen.services.records import HttpRecordStore
from visualgen.services.storage import CloudinaryStorage


@dataclass
class Services:
    store: JobStore
    invoker: ResilientInvoker
    pacer: RatePacer
    coordinator: JobCoordinator
    reporter: ProgressReporter
    client: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        await self.coordinator.shutdown()
        if self.client is not None:
            await self.client.aclose()


def build_store() -> JobStore:
    if config.JOB_STORE == "memory":
        return MemoryJobStore()
    return SqliteJobStore()


def build_services(
    store: Optional[JobStore] = None, client: Optional[httpx.AsyncClient] = None
) -> Services:
    store = store or build_store()
    client = client or create_client()
    invoker = ResilientInvoker(RetryPolicy.from_config())
    pacer = RatePacer()
    records = HttpRecordStore(client)
    pipeline = ItemPipeline(
        content=AnthropicContentClient(client),
        images=StabilityImageClient(client),
        storage=CloudinaryStorage(client),
        records=records,
        invoker=invoker,
        pacer=pacer,
    )
    coordinator = JobCoordinator(store, pipeline, records, invoker, pacer)
    return Services(
        store=store,
        invoker=invoker,
        pacer=pacer,
        coordinator=coordinator,
        reporter=ProgressReporter(store, coordinator),
        client=client,
    )
