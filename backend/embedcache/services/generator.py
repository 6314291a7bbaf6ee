"""Embedding generation on top of the shared model.

Classes:
    BatchProgress: Per-item progress snapshot for batch generation.
    BatchEmbedder: Embeds single texts or ordered batches, normalising by default.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from embedcache.core.config import get_settings
from embedcache.core.exceptions import DimensionMismatch
from embedcache.services.model_loader import EmbeddingModel, ModelCoordinator, ProgressCallback
from embedcache.services.vectors import is_blank, normalize_vector, zero_vector

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchProgress:
    current: int
    total: int
    percentage: int

    @classmethod
    def at(cls, current: int, total: int) -> "BatchProgress":
        return cls(current=current, total=total, percentage=round(current / total * 100))


BatchProgressCallback = Callable[[BatchProgress], None]


class BatchEmbedder:
    def __init__(
        self,
        coordinator: ModelCoordinator,
        *,
        batch_size: Optional[int] = None,
        normalize: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self._coordinator = coordinator
        self.batch_size = batch_size or settings.embedding_batch_size
        self.normalize = settings.normalize_embeddings if normalize is None else normalize

    @property
    def dimensions(self) -> int:
        return self._coordinator.dimensions

    @property
    def model_name(self) -> str:
        return self._coordinator.model_name

    async def embed_one(
        self,
        text: str,
        *,
        normalize: Optional[bool] = None,
        on_model_load: Optional[ProgressCallback] = None,
    ) -> np.ndarray:
        """Embed ``text``; blank input yields the zero vector without touching the model."""

        if is_blank(text):
            return zero_vector(self.dimensions)
        model = await self._coordinator.acquire(on_model_load)
        (vector,) = await self._encode(model, [text], self.should_normalize(normalize))
        return vector

    async def embed_many(
        self,
        texts: Sequence[str],
        *,
        batch_size: Optional[int] = None,
        normalize: Optional[bool] = None,
        on_progress: Optional[BatchProgressCallback] = None,
        on_model_load: Optional[ProgressCallback] = None,
    ) -> list[np.ndarray]:
        """Embed ``texts`` in order, one vector per input.

        Each chunk of ``batch_size`` inputs is sent to the model as a single
        call. ``on_progress`` fires once per item after its chunk resolves. An
        exception from any chunk aborts the whole call.
        """

        if not texts:
            return []

        size = max(1, batch_size or self.batch_size)
        should_normalize = self.should_normalize(normalize)
        total = len(texts)
        results: list[np.ndarray] = []

        model: EmbeddingModel | None = None
        for start in range(0, total, size):
            chunk = texts[start : start + size]
            pending = [index for index, text in enumerate(chunk) if not is_blank(text)]
            encoded: dict[int, np.ndarray] = {}
            if pending:
                if model is None:
                    model = await self._coordinator.acquire(on_model_load)
                vectors = await self._encode(model, [chunk[index] for index in pending], should_normalize)
                encoded = dict(zip(pending, vectors))

            for index in range(len(chunk)):
                results.append(encoded.get(index, zero_vector(self.dimensions)))
                if on_progress is not None:
                    on_progress(BatchProgress.at(start + index + 1, total))

        _LOGGER.debug("Embedded %s texts with %s in batches of %s", total, self.model_name, size)
        return results

    async def _encode(self, model: EmbeddingModel, texts: list[str], normalize: bool) -> list[np.ndarray]:
        raw = await asyncio.to_thread(
            model.encode,
            texts,
            batch_size=len(texts),
            normalize_embeddings=False,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        matrix = np.asarray(raw, dtype=np.float32).reshape(len(texts), -1)
        if matrix.shape[1] != self.dimensions:
            raise DimensionMismatch(
                f"Model {self.model_name} returned {matrix.shape[1]} dimensions, expected {self.dimensions}"
            )
        vectors = [row.copy() for row in matrix]
        if normalize:
            vectors = [normalize_vector(row) for row in vectors]
        return vectors

    def should_normalize(self, normalize: Optional[bool]) -> bool:
        return self.normalize if normalize is None else normalize
