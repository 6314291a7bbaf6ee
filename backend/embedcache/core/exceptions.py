"""Core exceptions raised by the embedding services."""


class EmbeddingError(Exception):
    """Base exception for embedding generation and caching."""


class LoadFailure(EmbeddingError):
    """The embedding model could not be initialised.

    The coordinator keeps replaying the same instance to every caller until
    the model is explicitly unloaded.
    """


class DimensionMismatch(EmbeddingError, ValueError):
    """Two vectors (or a vector and the declared model size) differ in length."""


class StorageFailure(EmbeddingError):
    """A read, write or delete against the embedding cache table failed."""
