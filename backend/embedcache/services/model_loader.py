"""Lazy, load-once coordinator for the local embedding model.

Classes:
    ModelState: Lifecycle of the shared model handle.
    ModelLoadProgress: Notification emitted to an optional load observer.
    ModelInfo: Static description of the configured model.
    ModelCoordinator: Owns the model handle and serialises its initialisation.

Functions:
    load_sentence_transformer(model_name, cache_dir): Default loader.
    get_model_coordinator(): Return the application-wide coordinator.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Literal, Optional, Protocol, Sequence

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from embedcache.core.config import get_settings
from embedcache.core.exceptions import LoadFailure

_LOGGER = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    def encode(self, sentences: Sequence[str], **kwargs: Any) -> Any: ...


ModelLoader = Callable[[str, str], EmbeddingModel]


class ModelState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class ModelLoadProgress:
    status: Literal["downloading", "loading", "ready", "error"]
    progress: float | None = None
    file: str | None = None
    loaded: int | None = None
    total: int | None = None


ProgressCallback = Callable[[ModelLoadProgress], None]


@dataclass(slots=True)
class ModelInfo:
    name: str
    dimensions: int
    cached: bool
    loaded: bool


def load_sentence_transformer(model_name: str, cache_dir: str) -> EmbeddingModel:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name, cache_folder=cache_dir)


class ModelCoordinator:
    """Hands out one shared model instance, loading it at most once.

    The first caller to find the coordinator unloaded starts a load task; every
    caller arriving while it runs awaits that same task. A failed load is
    sticky: the stored ``LoadFailure`` is raised to all later callers until
    ``unload()`` is called.
    """

    def __init__(
        self,
        *,
        model_name: Optional[str] = None,
        dimensions: Optional[int] = None,
        cache_dir: Optional[str | Path] = None,
        loader: Optional[ModelLoader] = None,
        load_attempts: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.model_name = model_name or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.cache_dir = Path(cache_dir or settings.model_cache_dir)
        self._loader = loader or load_sentence_transformer
        self._load_attempts = max(1, load_attempts or settings.model_load_attempts)

        self._state = ModelState.UNLOADED
        self._model: EmbeddingModel | None = None
        self._error: LoadFailure | None = None
        self._loading: asyncio.Task[EmbeddingModel] | None = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is ModelState.READY

    async def acquire(self, on_progress: Optional[ProgressCallback] = None) -> EmbeddingModel:
        if self._state is ModelState.READY and self._model is not None:
            return self._model
        if self._state is ModelState.FAILED and self._error is not None:
            # Same instance every time; drop frames left by earlier raises.
            raise self._error.with_traceback(None)

        if self._loading is None:
            self._state = ModelState.LOADING
            self._loading = asyncio.create_task(self._load(on_progress))
            self._loading.add_done_callback(_consume_task_result)
        # Shielded: a cancelled waiter must not cancel the load for the others.
        return await asyncio.shield(self._loading)

    async def preload(self, on_progress: Optional[ProgressCallback] = None) -> None:
        await self.acquire(on_progress)

    def unload(self) -> None:
        if self._state is not ModelState.UNLOADED:
            _LOGGER.info("Unloading embedding model %s", self.model_name)
        self._model = None
        self._error = None
        self._loading = None
        self._state = ModelState.UNLOADED

    def is_model_cached(self) -> bool:
        hub_dir = self.cache_dir / f"models--{self.model_name.replace('/', '--')}"
        return hub_dir.exists() or (self.cache_dir / self.model_name).exists()

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            name=self.model_name,
            dimensions=self.dimensions,
            cached=self.is_model_cached(),
            loaded=self.is_loaded,
        )

    async def _load(self, on_progress: Optional[ProgressCallback]) -> EmbeddingModel:
        task = asyncio.current_task()
        _LOGGER.info("Loading embedding model %s", self.model_name)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            if not self.is_model_cached():
                _notify(on_progress, ModelLoadProgress(status="downloading", file=self.model_name))
            _notify(on_progress, ModelLoadProgress(status="loading"))
            model = await self._load_with_retry()
        except Exception as exc:
            error = LoadFailure(f"Failed to load embedding model {self.model_name}: {exc}")
            _LOGGER.error("Embedding model %s failed to load", self.model_name, exc_info=exc)
            if self._loading is task:
                self._error = error
                self._loading = None
                self._state = ModelState.FAILED
            _notify(on_progress, ModelLoadProgress(status="error"))
            raise error from exc

        if self._loading is task:
            self._model = model
            self._loading = None
            self._state = ModelState.READY
        _LOGGER.info("Embedding model %s ready", self.model_name)
        _notify(on_progress, ModelLoadProgress(status="ready", progress=1.0))
        return model

    async def _load_with_retry(self) -> EmbeddingModel:
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=1, max=20),
            stop=stop_after_attempt(self._load_attempts),
            reraise=True,
        ):
            with attempt:
                return await asyncio.to_thread(self._loader, self.model_name, str(self.cache_dir))
        raise LoadFailure(f"Embedding model {self.model_name} was not loaded")  # pragma: no cover


def _notify(callback: Optional[ProgressCallback], progress: ModelLoadProgress) -> None:
    if callback is None:
        return
    try:
        callback(progress)
    except Exception:  # pragma: no cover
        _LOGGER.warning("Model load progress callback raised", exc_info=True)


def _consume_task_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


@lru_cache()
def get_model_coordinator() -> ModelCoordinator:
    return ModelCoordinator()
