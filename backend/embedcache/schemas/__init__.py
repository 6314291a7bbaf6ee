"""Schema exports for the embedding API."""

from .embedding import (
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

__all__ = [
    "CacheClearResponse",
    "CacheStatsResponse",
    "EmbedRequest",
    "EmbedResponse",
    "InvalidateRequest",
    "InvalidateResponse",
    "ModelInfoResponse",
    "SimilarityRequest",
    "SimilarityResponse",
]
