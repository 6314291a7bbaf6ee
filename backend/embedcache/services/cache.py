"""Content-addressed embedding cache backed by the ``embedding_cache`` table.

Classes:
    CacheCounters: Mutable hit/miss tallies, optionally shared between caches.
    CacheStats: Hit/miss counters plus persisted entry count for one version.
    EmbeddingCache: Per-session cache scoped to a single model version.

Functions:
    hash_content(content): SHA-256 hex digest used as the cache key.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from embedcache.core.config import get_settings
from embedcache.core.exceptions import DimensionMismatch, StorageFailure
from embedcache.models import CachedEmbedding
from embedcache.services.vectors import as_vector, deserialize_vector, serialize_vector

_LOGGER = logging.getLogger(__name__)


def hash_content(content: str) -> str:
    # Lone surrogates (JSON "\ud800") are valid str but not strict UTF-8.
    return hashlib.sha256(content.encode("utf-8", "surrogatepass")).hexdigest()


@dataclass(slots=True)
class CacheCounters:
    hits: int = 0
    misses: int = 0


@dataclass(slots=True)
class CacheStats:
    hits: int
    misses: int
    hit_rate: float
    total_entries: int
    model_version: str


class EmbeddingCache:
    """Persisted vectors keyed by content hash and model version.

    Lookups only see rows written for ``model_version``; rows from other
    versions stay in the table until ``clear_stale()`` removes them. Hit and
    miss counters are never persisted; they belong to this instance unless a
    shared ``CacheCounters`` is passed in (the API shares one across requests).

    Storage errors are raised as ``StorageFailure`` after rolling the session
    back; the cache never turns them into misses on its own.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        model_version: Optional[str] = None,
        dimensions: Optional[int] = None,
        counters: Optional[CacheCounters] = None,
    ) -> None:
        settings = get_settings()
        self._session = session
        self.model_version = model_version or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self._counters = counters if counters is not None else CacheCounters()

    hash_content = staticmethod(hash_content)

    async def get(self, content: str) -> np.ndarray | None:
        return (await self.get_many([content]))[0]

    async def get_many(self, contents: Sequence[str]) -> list[np.ndarray | None]:
        """Look up every item, counting one hit or miss per item."""

        if not contents:
            return []
        hashes = [hash_content(content) for content in contents]
        stmt = select(CachedEmbedding).where(
            CachedEmbedding.content_hash.in_(set(hashes)),
            CachedEmbedding.model_version == self.model_version,
        )
        async with self._storage_errors("read"):
            result = await self._session.exec(stmt)
            rows = {record.content_hash: record for record in result.scalars()}

        vectors: list[np.ndarray | None] = []
        for text_hash in hashes:
            record = rows.get(text_hash)
            if record is None:
                self._counters.misses += 1
                vectors.append(None)
                continue
            self._counters.hits += 1
            vectors.append(deserialize_vector(record.embedding, record.dimensions))
        return vectors

    async def put(self, content: str, vector: Sequence[float] | np.ndarray) -> None:
        await self.put_many([(content, vector)])

    async def put_many(self, items: Iterable[tuple[str, Sequence[float] | np.ndarray]]) -> None:
        """Upsert vectors, overwriting any row for the same hash and version."""

        vectors: dict[str, np.ndarray] = {}
        for content, vector in items:
            arr = as_vector(vector)
            if arr.size != self.dimensions:
                raise DimensionMismatch(
                    f"Cannot cache a {arr.size}-dimensional vector for {self.model_version} "
                    f"({self.dimensions} dimensions)"
                )
            vectors[hash_content(content)] = arr
        if not vectors:
            return

        async with self._storage_errors("write"):
            try:
                await self._upsert(vectors)
            except IntegrityError:
                # A concurrent writer inserted one of the keys first; overwrite it.
                await self._session.rollback()
                await self._upsert(vectors)

    async def stats(self) -> CacheStats:
        stmt = select(func.count()).select_from(CachedEmbedding).where(
            CachedEmbedding.model_version == self.model_version
        )
        async with self._storage_errors("read"):
            total = int((await self._session.exec(stmt)).scalar_one())
        requests = self._counters.hits + self._counters.misses
        return CacheStats(
            hits=self._counters.hits,
            misses=self._counters.misses,
            hit_rate=self._counters.hits / requests if requests else 0.0,
            total_entries=total,
            model_version=self.model_version,
        )

    def reset_stats(self) -> None:
        self._counters.hits = 0
        self._counters.misses = 0

    async def invalidate(self, content: str) -> bool:
        """Drop the entry for ``content`` under every model version."""

        stmt = delete(CachedEmbedding).where(CachedEmbedding.content_hash == hash_content(content))
        async with self._storage_errors("delete"):
            result = await self._session.execute(stmt)
            await self._session.commit()
        return result.rowcount > 0

    async def clear_current(self) -> int:
        stmt = delete(CachedEmbedding).where(CachedEmbedding.model_version == self.model_version)
        async with self._storage_errors("delete"):
            result = await self._session.execute(stmt)
            await self._session.commit()
        self.reset_stats()
        _LOGGER.info("Cleared %s cached embeddings for %s", result.rowcount, self.model_version)
        return int(result.rowcount)

    async def clear_stale(self) -> int:
        stmt = delete(CachedEmbedding).where(CachedEmbedding.model_version != self.model_version)
        async with self._storage_errors("delete"):
            result = await self._session.execute(stmt)
            await self._session.commit()
        _LOGGER.info("Cleared %s stale cached embeddings (current %s)", result.rowcount, self.model_version)
        return int(result.rowcount)

    async def _upsert(self, vectors: dict[str, np.ndarray]) -> None:
        stmt = select(CachedEmbedding).where(
            CachedEmbedding.content_hash.in_(list(vectors)),
            CachedEmbedding.model_version == self.model_version,
        )
        result = await self._session.exec(stmt)
        existing_map = {record.content_hash: record for record in result.scalars()}

        now = datetime.now(timezone.utc)
        for text_hash, arr in vectors.items():
            blob = serialize_vector(arr)
            cache_obj = existing_map.get(text_hash)
            if cache_obj is None:
                self._session.add(
                    CachedEmbedding(
                        content_hash=text_hash,
                        model_version=self.model_version,
                        embedding=blob,
                        dimensions=int(arr.size),
                        created_at=now,
                    )
                )
            else:
                cache_obj.embedding = blob
                cache_obj.dimensions = int(arr.size)
                cache_obj.created_at = now
        await self._session.commit()

    @asynccontextmanager
    async def _storage_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            _LOGGER.error("Embedding cache %s failed", operation, exc_info=exc)
            try:
                await self._session.rollback()
            except SQLAlchemyError:
                _LOGGER.warning("Rollback after failed cache %s also failed", operation, exc_info=True)
            raise StorageFailure(f"Embedding cache {operation} failed: {exc}") from exc
