"""Pytest configuration and shared fixtures."""

import asyncio
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docflow.config import PipelineSettings
from docflow.core.provider_registry import ProviderRegistry
from docflow.database.base import Base
from docflow.pipeline.engine import StageTransitionEngine
from docflow.pipeline.prompt_resolver import seed_default_templates
from docflow.pipeline.retry_policy import RetryPolicy
from docflow.schemas.pipeline import DocumentContext, ProviderResponse
from docflow.utils.exceptions import StorageError

ScriptItem = Union[ProviderResponse, Exception, Callable[[], Any]]


def response(data: Dict[str, Any], confidence: float = 0.9, tokens_used: int = 100) -> ProviderResponse:
    """Build a provider answer the way ``LLMProvider.invoke`` normalizes it."""
    return ProviderResponse(
        raw_response=str(data),
        extracted_data=dict(data),
        confidence=confidence,
        tokens_used=tokens_used,
        cost=0.001,
    )


class ScriptedProvider:
    """Stand-in LLM provider answering from a per-stage script.

    Each stage has a queue of answers; an answer is a ``ProviderResponse``,
    an exception to raise, or a coroutine function to await (used to
    simulate slow providers). The last answer of a stage repeats.
    """

    def __init__(self, provider: str, model: str):
        self.provider = provider
        self.model = model
        self.scripts: Dict[str, Deque[ScriptItem]] = defaultdict(deque)
        self.calls: List[DocumentContext] = []
        self.prompts: List[str] = []

    def script(self, stage: str, *items: ScriptItem) -> "ScriptedProvider":
        self.scripts[stage].extend(items)
        return self

    async def invoke(self, rendered_prompt: str, context: DocumentContext, timeout: float) -> ProviderResponse:
        self.calls.append(context)
        self.prompts.append(rendered_prompt)
        queue = self.scripts[context.stage.value]
        if not queue:
            raise AssertionError(f"{self.provider}/{self.model} has no answer scripted for {context.stage.value}")
        item = queue.popleft() if len(queue) > 1 else queue[0]

        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item()
        return item


class FakeStorage:
    """In-memory object storage."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = objects or {}
        self.errors: Deque[StorageError] = deque()
        self.calls: List[str] = []

    async def get_object(self, bucket: str, key: str) -> bytes:
        self.calls.append(f"{bucket}/{key}")
        if self.errors:
            raise self.errors.popleft()
        if key not in self.objects:
            raise StorageError(f"Object {bucket}/{key} could not be read (HTTP 404)")
        return self.objects[key]


@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seeded_templates(session_factory):
    async with session_factory() as session:
        return await seed_default_templates(session)


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    """Deterministic pipeline settings: no jitter, short timeouts."""
    return PipelineSettings().model_copy(
        update={
            "max_retries": 3,
            "max_correction_cycles": 2,
            "retry_jitter": 0.0,
            "provider_call_timeout_seconds": 0.5,
            "stage_deadline_seconds": 2.0,
            "lease_seconds": 300,
            "stage_providers": {
                "CLASSIFICATION": ["openai/gpt-4o-mini"],
                "EXTRACTION": ["openai/gpt-4o-mini"],
                "VALIDATION": ["openai/gpt-4o-mini", "anthropic/claude-3-5-haiku-latest"],
                "CORRECTION": ["openai/gpt-4o-mini"],
                "REVALIDATION": ["openai/gpt-4o-mini", "anthropic/claude-3-5-haiku-latest"],
            },
            "provider_weights": {"anthropic": 0.55, "openai": 0.45},
        }
    )


@pytest.fixture
def openai_provider() -> ScriptedProvider:
    return ScriptedProvider("openai", "gpt-4o-mini")


@pytest.fixture
def anthropic_provider() -> ScriptedProvider:
    return ScriptedProvider("anthropic", "claude-3-5-haiku-latest")


@pytest.fixture
def registry(openai_provider, anthropic_provider) -> ProviderRegistry:
    return ProviderRegistry([openai_provider, anthropic_provider])


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage({"user-1/invoice.pdf": b"%PDF-1.4 invoice"})


@pytest.fixture
def stage_engine(session_factory, registry, storage, pipeline_settings, seeded_templates) -> StageTransitionEngine:
    return StageTransitionEngine(
        session_factory=session_factory,
        registry=registry,
        storage=storage,
        pipeline_settings=pipeline_settings,
        semaphore=asyncio.Semaphore(4),
        policy=RetryPolicy.from_settings(pipeline_settings),
        worker_id="worker-test",
    )


@pytest.fixture
def sample_invoice() -> Dict[str, Any]:
    return {
        "invoice_number": "INV-2024-001",
        "date": "2024-03-01",
        "due_date": "2024-03-31",
        "vendor": "Acme Supplies",
        "subtotal": 100.0,
        "tax": 20.0,
        "total": 120.0,
        "currency": "EUR",
    }
