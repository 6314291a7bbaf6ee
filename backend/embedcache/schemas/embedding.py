"""Pydantic schemas for the embedding endpoints.

Classes:
    EmbedRequest, EmbedResponse: Batch embedding payloads.
    SimilarityRequest, SimilarityResponse: Cosine similarity between two vectors.
    CacheStatsResponse, CacheClearResponse, InvalidateRequest, InvalidateResponse: Cache maintenance.
    ModelInfoResponse: Description of the configured model and its load state.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EmbedRequest(BaseModel):
    texts: list[str] = Field(default_factory=list)
    use_cache: bool = True
    normalize: Optional[bool] = None
    batch_size: Optional[int] = Field(default=None, ge=1, le=1024)


class EmbedResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model: str
    dimensions: int
    embeddings: list[list[float]]


class SimilarityRequest(BaseModel):
    a: list[float]
    b: list[float]


class SimilarityResponse(BaseModel):
    similarity: float


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    hits: int
    misses: int
    hit_rate: float
    total_entries: int
    model_version: str


class CacheClearResponse(BaseModel):
    deleted: int


class InvalidateRequest(BaseModel):
    text: str


class InvalidateResponse(BaseModel):
    removed: bool


class ModelInfoResponse(BaseModel):
    name: str
    dimensions: int
    cached: bool
    loaded: bool
    state: str
