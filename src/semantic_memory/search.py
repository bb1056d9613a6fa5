"""
Query engine.

Embeds the query, over-fetches from the vector index when post-filtering
may drop hits, normalises raw scores into [0, 1], and returns the top
``limit`` results ranked by score (ties: most recently updated first).
"""

import logging
from typing import Any

from .adapters.base import Embedder, VectorIndex
from .adapters.memory_index import matches_filters
from .errors import InvalidRequestError
from .models.results import SearchResult
from .repository import MemoryRepository
from .utils.scoring import get_score_mapper

logger = logging.getLogger(__name__)


class QueryEngine:
    """Similarity search scoped to one owner."""

    def __init__(
        self,
        repository: MemoryRepository,
        embedder: Embedder,
        index: VectorIndex,
        overfetch_factor: int = 3,
        score_normalization: str = "auto",
    ):
        self.repository = repository
        self.embedder = embedder
        self.index = index
        self.overfetch_factor = max(1, overfetch_factor)
        self._normalize = get_score_mapper(score_normalization, index.distance_metric)

    async def search(
        self,
        owner_id: str,
        query_text: str,
        limit: int,
        score_threshold: float | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """
        Rank the owner's memories against *query_text*.

        Args:
            owner_id: Owner scope; results never include other owners' items
            query_text: Text to embed and search for
            limit: Maximum number of results (must be positive)
            score_threshold: Drop results whose normalised score is below this
            metadata_filter: Exact-match conditions on metadata keys

        Returns:
            Results ordered by score descending, empty when nothing matches

        Raises:
            InvalidRequestError: limit <= 0, empty owner or query
            AdapterError: embedder or index failure
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidRequestError(f"limit must be a positive integer, got {limit!r}")
        if not owner_id:
            raise InvalidRequestError("owner_id must be a non-empty string")
        if not query_text or not query_text.strip():
            raise InvalidRequestError("query must be a non-empty string")
        if score_threshold is not None and not 0.0 <= score_threshold <= 1.0:
            raise InvalidRequestError(f"score_threshold must be within [0, 1], got {score_threshold}")

        post_filtering = bool(metadata_filter) or score_threshold is not None
        k = limit * self.overfetch_factor if post_filtering else limit

        vector = await self.embedder.embed(query_text, "query")
        hits = await self.index.query(owner_id, vector, k, filters=metadata_filter or None)

        results: list[SearchResult] = []
        for hit in hits:
            item = await self.repository.read(hit.id)
            # The repository decides existence; stale index points are skipped
            if item is None or item.owner_id != owner_id:
                continue
            if not matches_filters(item.to_payload(), metadata_filter):
                continue
            score = self._normalize(hit.score)
            if score_threshold is not None and score < score_threshold:
                continue
            results.append(SearchResult(memory=item, score=score, raw_score=hit.score))

        results.sort(key=lambda r: (r.score, r.memory.updated_at or 0.0), reverse=True)
        logger.debug(f"Search for owner {owner_id}: {len(hits)} hits, {len(results)} after filtering")
        return results[:limit]
