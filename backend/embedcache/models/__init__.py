"""Convenience exports for ORM models."""

from .embedding_cache import CachedEmbedding

__all__ = ["CachedEmbedding"]
