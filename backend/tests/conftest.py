import os
import tempfile
from collections.abc import AsyncGenerator
from typing import Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MODEL_CACHE_DIR", tempfile.mkdtemp(prefix="embedcache-models-"))

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from embedcache.api.routes.embeddings import get_cache_counters
from embedcache.db.session import create_cache_schema, get_session
from embedcache.main import app
from embedcache.services import CacheCounters, ModelCoordinator, get_model_coordinator

MODEL_NAME = "test/fake-minilm"
DIMENSIONS = 384


class FakeEmbeddingModel:
    """Deterministic stand-in for a sentence-transformers model."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: int = 0
        self.texts: list[str] = []

    def encode(self, sentences: Sequence[str], **_: object) -> np.ndarray:
        self.calls += 1
        self.texts.extend(sentences)
        rows = []
        for text in sentences:
            codes = [ord(char) for char in text]
            rows.append([(codes[i % len(codes)] + i) / 1000 for i in range(self.dimensions)])
        return np.asarray(rows, dtype=np.float32)


@pytest.fixture()
def fake_model() -> FakeEmbeddingModel:
    return FakeEmbeddingModel()


@pytest.fixture()
def coordinator(fake_model: FakeEmbeddingModel, tmp_path) -> ModelCoordinator:
    return ModelCoordinator(
        model_name=MODEL_NAME,
        dimensions=DIMENSIONS,
        cache_dir=tmp_path / "models",
        loader=lambda name, cache_dir: fake_model,
        load_attempts=1,
    )


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", connect_args={"check_same_thread": False})
    async with engine.begin() as conn:
        await create_cache_schema(conn)
    return engine


@pytest_asyncio.fixture()
async def session() -> AsyncGenerator[AsyncSession, None]:
    engine = await _make_engine()
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def other_session() -> AsyncGenerator[AsyncSession, None]:
    engine = await _make_engine()
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def bare_session() -> AsyncGenerator[AsyncSession, None]:
    """Session on a database where the cache table was never created."""

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", connect_args={"check_same_thread": False})
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def file_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Engine on an on-disk database, so separate sessions share rows."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    async with engine.begin() as conn:
        await create_cache_schema(conn)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def client(session: AsyncSession, coordinator: ModelCoordinator) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    counters = CacheCounters()
    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_model_coordinator] = lambda: coordinator
    app.dependency_overrides[get_cache_counters] = lambda: counters
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
