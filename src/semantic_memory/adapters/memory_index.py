
"""
In-process vector index.

Brute-force numpy search over an owner-partitioned dict. Used as the default
provider for embedded/single-process deployments and as the index double in
tests. Not persistent.
"""

import copy
import logging
from typing import Any

import numpy as np

from ..errors import AdapterError
from ..models.results import IndexHit
from .base import VectorIndex

logger = logging.getLogger(__name__)

_METRICS = ("cosine", "dot", "euclid")


def matches_filters(payload: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """Exact-match every filter key against the payload's metadata."""
    if not filters:
        return True
    metadata = payload.get("metadata") or {}
    return all(key in metadata and metadata[key] == value for key, value in filters.items())


class InMemoryVectorIndex(VectorIndex):
    """Owner-partitioned brute-force index."""

    def __init__(self, distance_metric: str = "cosine", dimensions: int | None = None):
        metric = distance_metric.lower()
        if metric not in _METRICS:
            raise ValueError(f"Unsupported distance metric: {distance_metric}")
        self._metric = metric
        self._dimensions = dimensions
        # owner_id -> memory_id -> (vector, payload)
        self._points: dict[str, dict[str, tuple[np.ndarray, dict[str, Any]]]] = {}
        self._owner_of: dict[str, str] = {}

    @property
    def distance_metric(self) -> str:
        return self._metric

    def __len__(self) -> int:
        return len(self._owner_of)

    def _as_vector(self, vector: list[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float64)
        if arr.ndim != 1 or arr.size == 0:
            raise AdapterError("memory-index", "vector must be a non-empty 1-D sequence")
        if self._dimensions is None:
            self._dimensions = arr.size
        elif arr.size != self._dimensions:
            raise AdapterError(
                "memory-index",
                f"Embedding dimension mismatch: expected {self._dimensions}, got {arr.size}",
            )
        return arr

    async def upsert(self, memory_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        owner_id = payload.get("owner_id")
        if not owner_id:
            raise AdapterError("memory-index", "payload must carry owner_id")
        arr = self._as_vector(vector)

        previous_owner = self._owner_of.get(memory_id)
        if previous_owner is not None and previous_owner != owner_id:
            self._points[previous_owner].pop(memory_id, None)

        self._points.setdefault(owner_id, {})[memory_id] = (arr, copy.deepcopy(payload))
        self._owner_of[memory_id] = owner_id
        logger.debug(f"Upserted {memory_id[:8]}... for owner {owner_id}")

    async def update_payload(self, memory_id: str, payload: dict[str, Any]) -> None:
        owner_id = self._owner_of.get(memory_id)
        if owner_id is None:
            raise AdapterError("memory-index", f"no point stored under {memory_id}")
        vector, _ = self._points[owner_id][memory_id]
        await self.upsert(memory_id, vector.tolist(), payload)

    async def delete(self, memory_id: str) -> bool:
        owner_id = self._owner_of.pop(memory_id, None)
        if owner_id is None:
            return False
        self._points.get(owner_id, {}).pop(memory_id, None)
        return True

    async def get(self, memory_id: str) -> dict[str, Any] | None:
        owner_id = self._owner_of.get(memory_id)
        if owner_id is None:
            return None
        _, payload = self._points[owner_id][memory_id]
        return copy.deepcopy(payload)

    def _score(self, query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
        if self._metric == "dot":
            return vectors @ query
        if self._metric == "euclid":
            return np.linalg.norm(vectors - query, axis=1)
        norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        return (vectors @ query) / norms

    async def query(
        self,
        owner_id: str,
        vector: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        if k <= 0:
            return []
        candidates = [
            (memory_id, vec, payload)
            for memory_id, (vec, payload) in self._points.get(owner_id, {}).items()
            if matches_filters(payload, filters)
        ]
        if not candidates:
            return []

        query_vec = self._as_vector(vector)
        scores = self._score(query_vec, np.stack([vec for _, vec, _ in candidates]))
        # Euclidean distance: lower is better
        order = np.argsort(scores) if self._metric == "euclid" else np.argsort(-scores)

        return [
            IndexHit(id=candidates[i][0], score=float(scores[i]), payload=copy.deepcopy(candidates[i][2]))
            for i in order[:k]
        ]

    async def scan(self, owner_id: str, limit: int | None = None) -> list[IndexHit]:
        points = list(self._points.get(owner_id, {}).items())
        points.sort(key=lambda item: item[1][1].get("created_at") or 0.0)
        if limit is not None:
            points = points[:limit]
        return [IndexHit(id=memory_id, score=0.0, payload=copy.deepcopy(payload)) for memory_id, (_, payload) in points]

    async def reset(self) -> None:
        self._points.clear()
        self._owner_of.clear()
