"""Route exports for the API layer."""

from .embeddings import router as embeddings_router

__all__ = ["embeddings_router"]
