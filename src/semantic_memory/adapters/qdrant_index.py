# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Qdrant vector index adapter.

Stores one point per memory item (point id = memory id) with the item's
payload, partitions queries by an ``owner_id`` payload condition, and wraps
every client call with a circuit breaker and retry on transient 5xx errors.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from qdrant_client import QdrantClient
from qdrant_client.http import exceptions as qdrant_exceptions
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HnswConfigDiff,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import AdapterConnectionError, AdapterError, TransientAdapterError
from ..models.results import IndexHit
from .base import VectorIndex
from .memory_index import matches_filters

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DISTANCES = {
    "cosine": Distance.COSINE,
    "dot": Distance.DOT,
    "euclid": Distance.EUCLID,
}

ADAPTER_NAME = "qdrant"


def is_retryable_error(exception: BaseException) -> bool:
    """Only 5xx responses are worth retrying; a 4xx will fail the same way again."""
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse):
        return exception.status_code is not None and 500 <= exception.status_code < 600
    return False


def translate_error(operation: str, exception: Exception) -> AdapterError:
    """Map a qdrant-client failure onto the engine's adapter error taxonomy."""
    if is_retryable_error(exception):
        return TransientAdapterError(ADAPTER_NAME, f"{operation} failed after retries: {exception}")
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse) and exception.status_code in (401, 403):
        return AdapterConnectionError(ADAPTER_NAME, f"{operation} rejected credentials: {exception}")
    if isinstance(exception, qdrant_exceptions.ResponseHandlingException | ConnectionError | OSError):
        return AdapterConnectionError(ADAPTER_NAME, f"{operation} could not reach Qdrant: {exception}")
    return AdapterError(ADAPTER_NAME, f"{operation} failed: {exception}")


def _scalar_filter_value(value: Any) -> bool:
    return isinstance(value, str | int | bool)


def is_point_id(memory_id: Any) -> bool:
    """Memory ids are UUID strings; a Qdrant server rejects any other string as a point id."""
    if not isinstance(memory_id, str):
        return False
    try:
        uuid.UUID(memory_id)
    except ValueError:
        return False
    return True


class QdrantVectorIndex(VectorIndex):
    """
    Qdrant-backed index in embedded (path), server (url) or in-memory mode.

    The collection is created on first write when the vector size is not
    known up front.
    """

    def __init__(
        self,
        collection_name: str = "memories",
        distance_metric: str = "Cosine",
        url: str | None = None,
        storage_path: str | None = None,
        vector_size: int | None = None,
        api_key: str | None = None,
        hnsw_m: int = 16,
        hnsw_ef_construct: int = 100,
        on_disk_payload: bool = False,
    ):
        """
        Args:
            collection_name: Qdrant collection name
            distance_metric: ``Cosine``, ``Dot`` or ``Euclid``
            url: Qdrant server URL (server mode); ``:memory:`` for an in-process store
            storage_path: Path to Qdrant storage directory (embedded mode)
            vector_size: Embedding dimensions, if known before the first write
            api_key: Qdrant API key (server mode only)
        """
        if url and storage_path:
            raise ValueError("Cannot specify both url and storage_path. Choose embedded OR server mode.")

        metric = distance_metric.lower()
        if metric not in _DISTANCES:
            raise ValueError(f"Unsupported distance metric: {distance_metric}")

        self.url = url
        self.storage_path = storage_path
        self.collection_name = collection_name
        self.api_key = api_key
        self._metric = metric
        self._vector_size = vector_size
        self._hnsw_m = hnsw_m
        self._hnsw_ef_construct = hnsw_ef_construct
        self._on_disk_payload = on_disk_payload

        # Circuit breaker state
        self._failure_count = 0
        self._circuit_open_until: datetime | None = None
        self._failure_threshold = 5  # Open circuit after 5 consecutive failures
        self._circuit_timeout = 60  # Reclose circuit after 60 seconds

        self.client: QdrantClient | None = None
        self._initialized = False
        self._collection_ready = False
        self._init_lock = asyncio.Lock()
        self._collection_lock = asyncio.Lock()

    @property
    def distance_metric(self) -> str:
        return self._metric

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _make_client(self) -> QdrantClient:
        if self.url == ":memory:" or (not self.url and not self.storage_path):
            return QdrantClient(location=":memory:")
        if self.url:
            return QdrantClient(url=self.url, api_key=self.api_key)
        return QdrantClient(path=self.storage_path)

    async def initialize(self) -> None:
        """Connect and, when the vector size is known, ensure the collection exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            location = self.url or self.storage_path or ":memory:"
            logger.info(f"Initializing Qdrant index at {location}, collection={self.collection_name}")
            loop = asyncio.get_running_loop()
            try:
                self.client = await loop.run_in_executor(None, self._make_client)
            except Exception as e:
                raise translate_error("connect", e) from e

            if await self._collection_exists():
                await self._verify_vector_size()
                self._collection_ready = True
            elif self._vector_size is not None:
                await self._create_collection(self._vector_size)

            self._initialized = True
            logger.info("Qdrant index initialization complete")

    async def _collection_exists(self) -> bool:
        collections = await self._call("get_collections", lambda: self.client.get_collections())
        return self.collection_name in {col.name for col in collections.collections}

    async def _verify_vector_size(self) -> None:
        info = await self._call("get_collection", lambda: self.client.get_collection(self.collection_name))
        vectors = getattr(getattr(info.config, "params", None), "vectors", None)
        existing_size = getattr(vectors, "size", None)
        if existing_size is None:
            return
        if self._vector_size is not None and existing_size != self._vector_size:
            raise AdapterError(
                ADAPTER_NAME,
                f"Collection vector size ({existing_size}) doesn't match "
                f"current embedding dimensions ({self._vector_size})",
            )
        self._vector_size = existing_size

    async def _create_collection(self, vector_size: int) -> None:
        await self._call(
            "create_collection",
            lambda: self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=vector_size, distance=_DISTANCES[self._metric]),
                hnsw_config=HnswConfigDiff(m=self._hnsw_m, ef_construct=self._hnsw_ef_construct),
                on_disk_payload=self._on_disk_payload,
            ),
        )
        for field_name, schema in (("owner_id", PayloadSchemaType.KEYWORD), ("created_at", PayloadSchemaType.FLOAT)):
            await self._call(
                "create_payload_index",
                lambda f=field_name, s=schema: self.client.create_payload_index(
                    collection_name=self.collection_name, field_name=f, field_schema=s
                ),
            )
        self._vector_size = vector_size
        self._collection_ready = True
        logger.info(f"Created collection '{self.collection_name}' with vector size {vector_size}")

    async def _ensure_collection(self, vector_size: int) -> None:
        if self._collection_ready:
            return
        async with self._collection_lock:
            if not self._collection_ready:
                await self._create_collection(vector_size)

    async def close(self) -> None:
        if self.client is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.client.close)
            self.client = None
            self._initialized = False
            self._collection_ready = False

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def _check_circuit_breaker(self) -> None:
        """
        Fail fast while the circuit breaker is open.

        Raises:
            AdapterConnectionError: If circuit breaker is open
        """
        if self._circuit_open_until is not None:
            if datetime.now() < self._circuit_open_until:
                retry_time = self._circuit_open_until.strftime("%Y-%m-%d %H:%M:%S")
                raise AdapterConnectionError(
                    ADAPTER_NAME, f"Circuit breaker is open until {retry_time}. Service temporarily unavailable."
                )
            logger.info("Qdrant circuit breaker cooled down, closing it")
            self._circuit_open_until = None
            self._failure_count = 0

    def _record_failure(self) -> None:
        self._failure_count += 1
        logger.warning(f"Qdrant failure {self._failure_count}/{self._failure_threshold} before the circuit opens")

        if self._failure_count >= self._failure_threshold:
            self._circuit_open_until = datetime.now() + timedelta(seconds=self._circuit_timeout)
            logger.error(
                f"Circuit breaker opened after {self._failure_count} consecutive failures. "
                f"Will retry at {self._circuit_open_until.strftime('%Y-%m-%d %H:%M:%S')}"
            )

    def _record_success(self) -> None:
        if self._failure_count > 0:
            logger.info(f"Qdrant call succeeded after {self._failure_count} failures, closing circuit breaker")
            self._failure_count = 0
            self._circuit_open_until = None

    # ------------------------------------------------------------------
    # Client call plumbing
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _execute(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking client call with circuit breaker and retry, translating failures."""
        self._check_circuit_breaker()
        try:
            result = await self._execute(fn)
        except Exception as e:
            self._record_failure()
            logger.error(f"Qdrant {operation} failed: {e}")
            raise translate_error(operation, e) from e
        self._record_success()
        return result

    def _owner_filter(self, owner_id: str, filters: dict[str, Any] | None = None) -> Filter:
        conditions = [FieldCondition(key="owner_id", match=MatchValue(value=owner_id))]
        for key, value in (filters or {}).items():
            # Only scalar matches push down; the rest are applied client-side
            if _scalar_filter_value(value):
                conditions.append(FieldCondition(key=f"metadata.{key}", match=MatchValue(value=value)))
        return Filter(must=conditions)

    # ------------------------------------------------------------------
    # VectorIndex operations
    # ------------------------------------------------------------------

    async def upsert(self, memory_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        await self.initialize()
        await self._ensure_collection(len(vector))

        if len(vector) != self._vector_size:
            raise AdapterError(
                ADAPTER_NAME,
                f"Embedding dimension mismatch: expected {self._vector_size}, got {len(vector)}",
            )

        point = PointStruct(id=memory_id, vector=vector, payload=payload)
        await self._call(
            "upsert",
            lambda: self.client.upsert(collection_name=self.collection_name, points=[point], wait=True),
        )
        logger.debug(f"Upserted point {memory_id[:8]}... into Qdrant")

    async def update_payload(self, memory_id: str, payload: dict[str, Any]) -> None:
        await self.initialize()
        if not self._collection_ready:
            raise AdapterError(ADAPTER_NAME, f"no point stored under {memory_id}")
        await self._call(
            "overwrite_payload",
            lambda: self.client.overwrite_payload(
                collection_name=self.collection_name, payload=payload, points=[memory_id], wait=True
            ),
        )

    async def get(self, memory_id: str) -> dict[str, Any] | None:
        await self.initialize()
        if not self._collection_ready or not is_point_id(memory_id):
            return None
        points = await self._call(
            "retrieve",
            lambda: self.client.retrieve(
                collection_name=self.collection_name, ids=[memory_id], with_payload=True, with_vectors=False
            ),
        )
        if not points:
            return None
        return dict(points[0].payload or {})

    async def delete(self, memory_id: str) -> bool:
        if await self.get(memory_id) is None:
            return False
        await self._call(
            "delete",
            lambda: self.client.delete(collection_name=self.collection_name, points_selector=[memory_id], wait=True),
        )
        logger.debug(f"Deleted point {memory_id[:8]}... from Qdrant")
        return True

    async def query(
        self,
        owner_id: str,
        vector: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        await self.initialize()
        if not self._collection_ready or k <= 0:
            return []

        response = await self._call(
            "query_points",
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=self._owner_filter(owner_id, filters),
                limit=k,
                with_payload=True,
                with_vectors=False,
            ),
        )

        hits = []
        for scored_point in response.points:
            payload = dict(scored_point.payload or {})
            if payload.get("owner_id") != owner_id or not matches_filters(payload, filters):
                continue
            hits.append(IndexHit(id=str(scored_point.id), score=float(scored_point.score), payload=payload))
        return hits

    async def scan(self, owner_id: str, limit: int | None = None) -> list[IndexHit]:
        await self.initialize()
        if not self._collection_ready:
            return []

        hits: list[IndexHit] = []
        next_offset = None
        scroll_filter = self._owner_filter(owner_id)
        while limit is None or len(hits) < limit:
            batch_size = 100 if limit is None else min(100, limit - len(hits))
            points, next_offset = await self._call(
                "scroll",
                lambda noff=next_offset, bs=batch_size: self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=bs,
                    offset=noff,
                    with_payload=True,
                    with_vectors=False,
                ),
            )
            hits.extend(IndexHit(id=str(p.id), score=0.0, payload=dict(p.payload or {})) for p in points)
            if not points or next_offset is None:
                break

        hits.sort(key=lambda h: h.payload.get("created_at") or 0.0)
        return hits

    async def reset(self) -> None:
        await self.initialize()
        if await self._collection_exists():
            await self._call("delete_collection", lambda: self.client.delete_collection(self.collection_name))
        self._collection_ready = False
        if self._vector_size is not None:
            await self._create_collection(self._vector_size)
        logger.info(f"Reset Qdrant collection '{self.collection_name}'")
