"""Cache-aware embedding generation.

Classes:
    CachedBatchEmbedder: Combines BatchEmbedder with EmbeddingCache so each
        content is computed at most once per model version.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Optional, Sequence

import numpy as np

from embedcache.services.cache import CacheStats, EmbeddingCache
from embedcache.services.generator import BatchEmbedder, BatchProgress, BatchProgressCallback
from embedcache.services.vectors import is_blank, normalize_vector

_LOGGER = logging.getLogger(__name__)


class CachedBatchEmbedder:
    """Serve embeddings from the cache, computing and storing only the misses.

    Storage errors propagate as ``StorageFailure``: a broken cache fails the
    request instead of silently recomputing everything.
    """

    def __init__(self, embedder: BatchEmbedder, cache: EmbeddingCache) -> None:
        self._embedder = embedder
        self._cache = cache

    @property
    def embedder(self) -> BatchEmbedder:
        return self._embedder

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def embed_one_cached(
        self,
        text: str,
        *,
        use_cache: bool = True,
        normalize: Optional[bool] = None,
    ) -> np.ndarray:
        if not use_cache or is_blank(text):
            return await self._embedder.embed_one(text, normalize=normalize)

        vector = await self._cache.get(text)
        if vector is None:
            vector = await self._embedder.embed_one(text, normalize=False)
            await self._cache.put(text, vector)
        return self._finish(vector, normalize)

    async def embed_many_cached(
        self,
        texts: Sequence[str],
        *,
        use_cache: bool = True,
        batch_size: Optional[int] = None,
        normalize: Optional[bool] = None,
        on_progress: Optional[BatchProgressCallback] = None,
    ) -> list[np.ndarray]:
        """Embed ``texts`` in input order, reusing cached vectors.

        The cache holds raw model output; ``normalize`` is applied on the way
        out, so callers with different normalisation share the same rows.
        Progress always reports ``total == len(texts)``; cache hits report
        first, so the first freshly computed item reports ``hits + 1``.
        Identical missing texts are computed once and copied to every slot.
        """

        if not texts:
            return []

        total = len(texts)
        results: list[np.ndarray | None] = [None] * total

        lookup_indices = [index for index, text in enumerate(texts) if use_cache and not is_blank(text)]
        if lookup_indices:
            cached = await self._cache.get_many([texts[index] for index in lookup_indices])
            for index, vector in zip(lookup_indices, cached):
                if vector is not None:
                    results[index] = self._finish(vector, normalize)

        slots_by_text: dict[str, list[int]] = defaultdict(list)
        for index, text in enumerate(texts):
            if results[index] is None:
                slots_by_text[text].append(index)

        resolved = total - sum(len(slots) for slots in slots_by_text.values())
        if on_progress is not None:
            for current in range(1, resolved + 1):
                on_progress(BatchProgress.at(current, total))
        if not slots_by_text:
            return results  # type: ignore[return-value]

        pending = list(slots_by_text)
        reported = resolved

        def _forward(progress: BatchProgress) -> None:
            nonlocal reported
            for _ in slots_by_text[pending[progress.current - 1]]:
                reported += 1
                on_progress(BatchProgress.at(reported, total))  # type: ignore[misc]

        generated = await self._embedder.embed_many(
            pending,
            batch_size=batch_size,
            normalize=False,
            on_progress=_forward if on_progress is not None else None,
        )

        if use_cache:
            await self._cache.put_many(
                (text, vector) for text, vector in zip(pending, generated) if not is_blank(text)
            )

        for text, raw in zip(pending, generated):
            vector = self._finish(raw, normalize)
            first, *rest = slots_by_text[text]
            results[first] = vector
            for index in rest:
                results[index] = vector.copy()

        _LOGGER.debug(
            "Embedded %s texts: %s from cache, %s computed",
            total,
            resolved,
            len(pending),
        )
        return results  # type: ignore[return-value]

    async def cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    def _finish(self, vector: np.ndarray, normalize: Optional[bool]) -> np.ndarray:
        if self._embedder.should_normalize(normalize):
            return normalize_vector(vector)
        return vector
