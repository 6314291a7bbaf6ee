"""Embedding endpoints backed by the local model and the persistent cache.

Endpoints:
    embed_texts(payload): Embed a batch of texts, reusing cached vectors.
    similarity(payload): Cosine similarity between two vectors.
    cache_stats(): Hit/miss counters and entry count for the active model.
    clear_cache(): Drop every cached vector for the active model.
    clear_stale_cache(): Drop cached vectors written by other model versions.
    invalidate_entry(payload): Drop the cached vector for one text.
    model_info(): Describe the configured model and its load state.
    preload_model(): Load the model ahead of the first embedding request.

Storage failures are reported as 503 rather than served from a recomputation:
callers see the cache is broken instead of silently paying for inference.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from embedcache.core.exceptions import DimensionMismatch, LoadFailure, StorageFailure
from embedcache.db.session import get_session
from embedcache.schemas import (
    CacheClearResponse,
    CacheStatsResponse,
    EmbedRequest,
    EmbedResponse,
    InvalidateRequest,
    InvalidateResponse,
    ModelInfoResponse,
    SimilarityRequest,
    SimilarityResponse,
)
from embedcache.services import (
    BatchEmbedder,
    CacheCounters,
    CachedBatchEmbedder,
    EmbeddingCache,
    ModelCoordinator,
    get_model_coordinator,
)
from embedcache.services.vectors import cosine_similarity

router = APIRouter(prefix="/embeddings", tags=["embeddings"])


@lru_cache()
def get_cache_counters() -> CacheCounters:
    return CacheCounters()


def get_embedding_cache(
    session: AsyncSession = Depends(get_session),
    coordinator: ModelCoordinator = Depends(get_model_coordinator),
    counters: CacheCounters = Depends(get_cache_counters),
) -> EmbeddingCache:
    return EmbeddingCache(
        session,
        model_version=coordinator.model_name,
        dimensions=coordinator.dimensions,
        counters=counters,
    )


def get_cached_embedder(
    cache: EmbeddingCache = Depends(get_embedding_cache),
    coordinator: ModelCoordinator = Depends(get_model_coordinator),
) -> CachedBatchEmbedder:
    return CachedBatchEmbedder(BatchEmbedder(coordinator), cache)


@router.post("", response_model=EmbedResponse)
async def embed_texts(
    payload: EmbedRequest,
    embedder: CachedBatchEmbedder = Depends(get_cached_embedder),
) -> EmbedResponse:
    try:
        vectors = await embedder.embed_many_cached(
            payload.texts,
            use_cache=payload.use_cache,
            batch_size=payload.batch_size,
            normalize=payload.normalize,
        )
    except (LoadFailure, StorageFailure) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return EmbedResponse(
        model=embedder.embedder.model_name,
        dimensions=embedder.embedder.dimensions,
        embeddings=[vector.tolist() for vector in vectors],
    )


@router.post("/similarity", response_model=SimilarityResponse)
async def similarity(payload: SimilarityRequest) -> SimilarityResponse:
    try:
        return SimilarityResponse(similarity=cosine_similarity(payload.a, payload.b))
    except DimensionMismatch as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(cache: EmbeddingCache = Depends(get_embedding_cache)) -> CacheStatsResponse:
    try:
        stats = await cache.stats()
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CacheStatsResponse(
        hits=stats.hits,
        misses=stats.misses,
        hit_rate=stats.hit_rate,
        total_entries=stats.total_entries,
        model_version=stats.model_version,
    )


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(cache: EmbeddingCache = Depends(get_embedding_cache)) -> CacheClearResponse:
    try:
        return CacheClearResponse(deleted=await cache.clear_current())
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.delete("/cache/stale", response_model=CacheClearResponse)
async def clear_stale_cache(cache: EmbeddingCache = Depends(get_embedding_cache)) -> CacheClearResponse:
    try:
        return CacheClearResponse(deleted=await cache.clear_stale())
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/cache/invalidate", response_model=InvalidateResponse)
async def invalidate_entry(
    payload: InvalidateRequest,
    cache: EmbeddingCache = Depends(get_embedding_cache),
) -> InvalidateResponse:
    try:
        return InvalidateResponse(removed=await cache.invalidate(payload.text))
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/model", response_model=ModelInfoResponse)
async def model_info(coordinator: ModelCoordinator = Depends(get_model_coordinator)) -> ModelInfoResponse:
    info = coordinator.model_info()
    return ModelInfoResponse(
        name=info.name,
        dimensions=info.dimensions,
        cached=info.cached,
        loaded=info.loaded,
        state=coordinator.state.value,
    )


@router.post("/model/preload", response_model=ModelInfoResponse)
async def preload_model(coordinator: ModelCoordinator = Depends(get_model_coordinator)) -> ModelInfoResponse:
    try:
        await coordinator.preload()
    except LoadFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return await model_info(coordinator)
