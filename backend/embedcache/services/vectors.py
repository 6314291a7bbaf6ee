"""Vector helpers shared by the embedder, the cache and the API.

Vectors are 1-D ``numpy.float32`` arrays. Persisted blobs are raw
little-endian IEEE-754 float32 values so they read back bit-for-bit on any
platform.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from embedcache.core.exceptions import DimensionMismatch

VECTOR_DTYPE = np.dtype("<f4")


def is_blank(text: str | None) -> bool:
    return not text or not text.strip()


def zero_vector(dimensions: int) -> np.ndarray:
    return np.zeros(dimensions, dtype=np.float32)


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


def normalize_vector(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Rescale to unit L2 norm; a zero-magnitude vector is returned unchanged."""

    arr = as_vector(vector)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not np.isfinite(norm):
        return arr
    return (arr / norm).astype(np.float32, copy=False)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    left = np.asarray(a, dtype=np.float64).reshape(-1)
    right = np.asarray(b, dtype=np.float64).reshape(-1)
    if left.size != right.size:
        raise DimensionMismatch(
            f"Embeddings must have same dimensions ({left.size} != {right.size})"
        )
    magnitude = float(np.linalg.norm(left) * np.linalg.norm(right))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(left, right) / magnitude)


def serialize_vector(vector: Sequence[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=VECTOR_DTYPE).reshape(-1).tobytes()


def deserialize_vector(blob: bytes, dimensions: int) -> np.ndarray:
    arr = np.frombuffer(blob, dtype=VECTOR_DTYPE)
    if arr.size != dimensions:
        raise DimensionMismatch(
            f"Stored embedding holds {arr.size} values, expected {dimensions}"
        )
    return arr.astype(np.float32)
