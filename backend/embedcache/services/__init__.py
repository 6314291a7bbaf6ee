"""Service layer exports.

Expose the model coordinator, cache and embedders for easy importing.
"""

from .cache import CacheCounters, CacheStats, EmbeddingCache, hash_content
from .cached_generator import CachedBatchEmbedder
from .generator import BatchEmbedder, BatchProgress
from .model_loader import ModelCoordinator, ModelLoadProgress, ModelState, get_model_coordinator

__all__ = [
    "BatchEmbedder",
    "BatchProgress",
    "CacheCounters",
    "CacheStats",
    "CachedBatchEmbedder",
    "EmbeddingCache",
    "ModelCoordinator",
    "ModelLoadProgress",
    "ModelState",
    "get_model_coordinator",
    "hash_content",
]
