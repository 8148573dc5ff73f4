"""Shared fakes for the coordinator, pipeline and API tests."""

from collections import Counter
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
import pytest

from visualgen.db.job_store import MemoryJobStore
from visualgen.schemas.visuals import (
    Definition,
    GeneratedContent,
    MnemonicHint,
    StyleProfile,
    VisualAsset,
    VisualType,
    WordContext,
)
from visualgen.services.content import ContentParseError
from visualgen.services.coordinator import JobCoordinator
from visualgen.services.invoker import ResilientInvoker, RetryPolicy
from visualgen.services.pacer import CallClass, RatePacer
from visualgen.services.pipeline import ItemPipeline
from visualgen.services.progress import ProgressReporter

WORDS = ["apple", "banana", "cherry"]


def http_error(status_code: int, url: str = "https://fake.test") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", url)
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def make_context(word: str, existing: Optional[List[VisualType]] = None) -> WordContext:
    return WordContext(
        word_id=word,
        word=word,
        definitions=[Definition(definition_en=f"the meaning of {word}", definition_ko=f"{word} 뜻")],
        examples=[f"I like {word}."],
        mnemonics=[MnemonicHint(content=f"remember {word} by its shape")],
        rhyming_words=["moon"],
        existing_visuals=existing or [],
    )


class FakeRecords:
    def __init__(self, words: Optional[List[str]] = None) -> None:
        self.contexts: Dict[str, WordContext] = {
            word: make_context(word) for word in (words or WORDS)
        }
        self.missing: Set[str] = set()
        self.context_calls: List[str] = []
        self.upserts: Dict[Tuple[str, VisualType], VisualAsset] = {}
        self.upsert_calls: Counter = Counter()

    async def get_word_context(self, word_id: str) -> WordContext:
        self.context_calls.append(word_id)
        if word_id in self.missing or word_id not in self.contexts:
            raise http_error(404, f"https://records.test/admin/words/{word_id}")
        return self.contexts[word_id]

    async def upsert_visual_asset(
        self, word_id: str, visual_type: VisualType, asset: VisualAsset
    ) -> None:
        self.upsert_calls[(word_id, visual_type)] += 1
        self.upserts[(word_id, visual_type)] = asset


class FakeContent:
    def __init__(self) -> None:
        self.unparseable: Set[str] = set()
        self.calls: List[Tuple[str, VisualType]] = []

    async def synthesize(self, visual_type: VisualType, context: WordContext) -> GeneratedContent:
        self.calls.append((context.word_id, visual_type))
        if context.word_id in self.unparseable:
            raise ContentParseError("no JSON object in model response")
        return GeneratedContent(
            prompt=f"model scene about {context.word}",
            caption_en=f"{context.word} caption",
            caption_ko=f"{context.word} 캡션",
        )


class FakeImages:
    """Fails image calls whose prompt mentions a planned word."""

    def __init__(self) -> None:
        self.transient: Dict[str, int] = {}
        self.permanent: Set[str] = set()
        self.calls: List[str] = []
        self.hook: Optional[Callable[[], Awaitable[None]]] = None

    def _word(self, prompt: str) -> Optional[str]:
        for word in WORDS:
            if word in prompt:
                return word
        return None

    async def synthesize(self, prompt: str, profile: StyleProfile) -> bytes:
        self.calls.append(prompt)
        if self.hook is not None:
            await self.hook()
        word = self._word(prompt)
        if word in self.permanent:
            raise http_error(400, "https://images.test")
        if word is not None and self.transient.get(word, 0) > 0:
            self.transient[word] -= 1
            raise http_error(503, "https://images.test")
        return f"png:{prompt}".encode()


class FakeStorage:
    def __init__(self) -> None:
        self.keys: List[str] = []

    async def upload(self, image: bytes, key: str) -> str:
        self.keys.append(key)
        return f"https://cdn.test/{key}.png"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def records() -> FakeRecords:
    return FakeRecords()


@pytest.fixture
def content() -> FakeContent:
    return FakeContent()


@pytest.fixture
def images() -> FakeImages:
    return FakeImages()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def invoker() -> ResilientInvoker:
    policy = RetryPolicy(max_attempts=4, base_delay=0, max_delay=0, timeout=5, jitter=False)
    return ResilientInvoker(policy)


@pytest.fixture
def pacer() -> RatePacer:
    return RatePacer({call_class: 0.0 for call_class in CallClass})


@pytest.fixture
def pipeline(content, images, storage, records, invoker, pacer) -> ItemPipeline:
    return ItemPipeline(content, images, storage, records, invoker, pacer)


@pytest.fixture
def coordinator(store, pipeline, records, invoker, pacer) -> JobCoordinator:
    return JobCoordinator(store, pipeline, records, invoker, pacer, max_words=10, retention=100)


@pytest.fixture
def reporter(store, coordinator) -> ProgressReporter:
    return ProgressReporter(store, coordinator)
