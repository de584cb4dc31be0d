"""
Pytest configuration and fixtures.

This file is automatically discovered by pytest and provides
shared fixtures for all test modules.

The suite runs against in-memory SQLite (aiosqlite) with a fresh schema
per test. Providers and the event dispatcher are replaced with in-process
fakes, so no broker, model download or vendor credentials are needed.

References:
-----------
- Pytest Fixtures: https://docs.pytest.org/en/stable/fixture.html
- FastAPI Testing: https://fastapi.tiangolo.com/advanced/async-tests/
"""

import os

# Settings are read at import time; these must be set before any mediaflow import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "testing"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["LOG_FORMAT"] = "text"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mediaflow.core.config import settings
from mediaflow.db.base import Base
from mediaflow.models import MediaChunk, MediaItem, MediaStatus, SourceKind, SubscriptionTier, Tenant
from mediaflow.services.providers.base import (
    TranscriptionResult,
    TranscriptionSource,
    TranscriptSegment,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}

# Fixed clock for tests that care about stuck thresholds and rate limits
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


# ================================
# Fakes
# ================================

class RecordingDispatcher:
    """EventDispatcher that remembers what was emitted instead of publishing."""

    def __init__(self):
        self.events: List[tuple[str, str]] = []

    def emit(self, event: str, item_id: str) -> None:
        self.events.append((event, item_id))

    def events_for(self, item_id: str) -> List[str]:
        return [event for event, emitted_id in self.events if emitted_id == item_id]

    def clear(self) -> None:
        self.events.clear()


def sentence_transcript(sentences: int, words_per_sentence: int = 10) -> str:
    """`sentences` sentences of exactly `words_per_sentence` words each."""
    body = " ".join(["word"] * (words_per_sentence - 1))
    return " ".join(f"{body} end{i}." for i in range(sentences))


class FakeTranscriptionProvider:
    def __init__(self, result: Optional[TranscriptionResult] = None, error: Optional[Exception] = None):
        self.result = result or TranscriptionResult(
            text="Welcome to the course. Today we cover async Python.",
            segments=[
                TranscriptSegment(start=0.0, end=3.0, text="Welcome to the course."),
                TranscriptSegment(start=3.0, end=7.5, text="Today we cover async Python."),
            ],
            language="en",
            duration_seconds=120.0,
        )
        self.error = error
        self.calls: List[TranscriptionSource] = []

    async def transcribe(self, source: TranscriptionSource, language_hint: Optional[str] = None) -> TranscriptionResult:
        self.calls.append(source)
        if self.error is not None:
            raise self.error
        return self.result


class FakeEmbeddingProvider:
    """Deterministic vectors; optionally fails once `fail_on_call` is reached."""

    def __init__(
        self,
        dimension: Optional[int] = None,
        error: Optional[Exception] = None,
        fail_on_call: Optional[int] = None,
    ):
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.error = error
        self.fail_on_call = fail_on_call
        self.calls: List[List[str]] = []

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None and (self.fail_on_call is None or len(self.calls) >= self.fail_on_call):
            raise self.error
        return [
            [round(0.001 * (index + 1), 6)] * self.dimension
            for index, _ in enumerate(texts)
        ]


# ================================
# Database Fixtures
# ================================

@pytest_asyncio.fixture
async def test_engine():
    """
    In-memory SQLite engine with a fresh schema per test.

    StaticPool keeps the single in-memory connection alive for the whole
    test, otherwise every checkout would see an empty database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session shaped like the application's (expire_on_commit=False)."""
    session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session


# ================================
# Domain Fixtures
# ================================

@pytest_asyncio.fixture
async def tenant(db_session: AsyncSession) -> Tenant:
    tenant = Tenant(name="Acme Academy", tier=SubscriptionTier.BASIC, is_active=True)
    db_session.add(tenant)
    await db_session.commit()
    return tenant


@pytest_asyncio.fixture
async def make_media_item(db_session: AsyncSession, tenant: Tenant):
    """
    Factory for media items.

    Defaults to a 1 KB pending upload created at NOW; `age_minutes` moves
    created_at into the past for stuck-item tests.
    """
    async def _make(age_minutes: int = 0, **overrides) -> MediaItem:
        created = NOW - timedelta(minutes=age_minutes)
        values = {
            "tenant_id": tenant.id,
            "title": "Lecture 1",
            "source_kind": SourceKind.UPLOAD,
            "storage_path": "tenants/acme/lecture-1.mp4",
            "file_size_bytes": 1024,
            "status": MediaStatus.PENDING,
            "created_at": created,
            "updated_at": created,
        }
        values.update(overrides)
        item = MediaItem(**values)
        db_session.add(item)
        await db_session.commit()
        return item

    return _make


@pytest_asyncio.fixture
async def add_chunks(db_session: AsyncSession):
    """Attach `count` chunks to an item, the first `embedded` with vectors."""
    async def _add(item_id: str, count: int, embedded: int = 0) -> List[MediaChunk]:
        chunks = []
        for index in range(count):
            chunk = MediaChunk(
                media_item_id=item_id,
                chunk_index=index,
                text=f"Chunk number {index} of the lecture transcript.",
                word_count=8,
                token_count=10,
                embedding=[0.1] * settings.EMBEDDING_DIMENSION if index < embedded else None,
            )
            db_session.add(chunk)
            chunks.append(chunk)
        await db_session.commit()
        return chunks

    return _add


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def transcription_provider() -> FakeTranscriptionProvider:
    return FakeTranscriptionProvider()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


# ================================
# FastAPI Client Fixtures
# ================================

@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    dispatcher: RecordingDispatcher,
    embedding_provider: FakeEmbeddingProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for the FastAPI app.

    Overrides the database session, the event dispatcher and the query
    embedder with the test fixtures.

    Usage:
        async def test_something(client: AsyncClient):
            response = await client.get("/api/v1/media/<id>/status")
            assert response.status_code == 200
    """
    from mediaflow.api.deps import get_event_dispatcher, get_query_embedder
    from mediaflow.db.deps import get_db
    from mediaflow.main import app

    async def override_get_db():
        yield db_session

    async def override_get_query_embedder():
        return embedding_provider

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_query_embedder] = override_get_query_embedder

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return dict(ADMIN_HEADERS)


# ================================
# Pytest Hooks
# ================================

def pytest_addoption(parser):
    """Add custom pytest options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that require network access and real API keys"
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: runs the HTTP app in-process against the test database"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
