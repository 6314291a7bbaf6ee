"""Embedding cache model for reusing vectors across requests."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, LargeBinary
from sqlmodel import Field, SQLModel


class CachedEmbedding(SQLModel, table=True):
    """One vector per (content hash, model version) pair.

    ``embedding`` holds raw little-endian float32 values, ``dimensions`` of them.
    """

    __tablename__ = "embedding_cache"
    __table_args__ = (
        Index("ix_embedding_cache_model_version", "model_version"),
    )

    content_hash: str = Field(primary_key=True, max_length=64)
    model_version: str = Field(primary_key=True)
    embedding: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    dimensions: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
