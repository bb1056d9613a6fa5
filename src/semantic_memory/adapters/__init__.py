"""Adapter interfaces and the shipped implementations.

Implementations with heavy imports (sentence-transformers, qdrant-client,
httpx) live in their own modules and are imported by the factory on demand.
"""

from .base import Embedder, EmbeddingPurpose, FactExtractor, VectorIndex
from .memory_index import InMemoryVectorIndex

__all__ = [
    "Embedder",
    "EmbeddingPurpose",
    "FactExtractor",
    "InMemoryVectorIndex",
    "VectorIndex",
]
