"""
Adapter interfaces consumed by the engine.

Three narrow collaborators sit outside the core: a fact extractor (LLM),
an embedder, and a vector index. Implementations translate their library
errors into ``AdapterError`` subclasses.
"""

from abc import ABC, abstractmethod
from typing import Any, Literal, Protocol, runtime_checkable

from ..models.actions import ClassificationHint
from ..models.memory import MemoryItem
from ..models.results import CandidateFact, IndexHit

EmbeddingPurpose = Literal["passage", "query"]


@runtime_checkable
class FactExtractor(Protocol):
    """Turns raw text into candidate facts and judges candidates against neighbors."""

    async def extract(self, text: str) -> list[CandidateFact]:
        """Extract zero or more candidate facts from *text*."""

    async def classify(self, candidate: str, neighbor: MemoryItem) -> ClassificationHint:
        """Decide how *candidate* relates to an existing memory.

        Raises:
            ClassificationError: for an unusable verdict (isolated per candidate).
            AdapterError: when the model cannot be reached.
        """


@runtime_checkable
class Embedder(Protocol):
    """Turns text into a fixed-length vector."""

    async def embed(self, text: str, purpose: EmbeddingPurpose = "passage") -> list[float]:
        """Embed *text*; ``purpose`` selects passage/query prompts for instruction-tuned models."""


class VectorIndex(ABC):
    """Vector store keyed by memory id, queried per owner."""

    @property
    @abstractmethod
    def distance_metric(self) -> str:
        """Metric name reported with raw scores (``cosine``, ``dot`` or ``euclid``)."""

    async def initialize(self) -> None:
        """Prepare the index for use (connect, create collections). Idempotent."""

    @abstractmethod
    async def upsert(self, memory_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        """Insert or replace the vector and payload stored under *memory_id*."""

    @abstractmethod
    async def update_payload(self, memory_id: str, payload: dict[str, Any]) -> None:
        """Replace the payload of *memory_id*, keeping its vector."""

    @abstractmethod
    async def delete(self, memory_id: str) -> bool:
        """Remove *memory_id*; returns False when it was not present."""

    @abstractmethod
    async def get(self, memory_id: str) -> dict[str, Any] | None:
        """Payload stored under *memory_id*, or None."""

    @abstractmethod
    async def query(
        self,
        owner_id: str,
        vector: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        """Up to *k* nearest neighbours of *vector* owned by *owner_id*, best first.

        ``filters`` are exact-match conditions on payload metadata keys.
        """

    @abstractmethod
    async def scan(self, owner_id: str, limit: int | None = None) -> list[IndexHit]:
        """Enumerate stored points for *owner_id* (score is 0.0)."""

    @abstractmethod
    async def reset(self) -> None:
        """Drop every stored point."""

    async def close(self) -> None:
        """Release client resources."""
