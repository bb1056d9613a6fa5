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
Memory - the host-facing entry point.

Wires the configured (or injected) adapters into the repository,
reconciliation engine and query engine, and runs lifecycle hooks around
each operation. Construction validates configuration only; adapters are
contacted on first use.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Self

from pydantic import ValidationError

from .adapters.base import Embedder, FactExtractor, VectorIndex
from .config import MemoryConfig, load_config
from .errors import AdapterError, ConcurrencyConflictError, InvalidRequestError, NotFoundError
from .factory import create_embedder, create_fact_extractor, create_vector_index
from .hooks import AddEvent, DeleteEvent, HookRegistry, SearchEvent, UpdateEvent
from .models.history import HistoryRecord
from .models.memory import MemoryItem
from .models.results import AddResult, ExportResult, ImportResult, SearchResult
from .reconciliation import ReconciliationEngine
from .repository import MemoryRepository
from .search import QueryEngine
from .storage.history_db import HistoryDB
from .storage.jsonl import read_jsonl, write_jsonl

logger = logging.getLogger(__name__)


def _check_owner(owner_id: Any) -> str:
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise InvalidRequestError("owner_id must be a non-empty string")
    return owner_id


def _check_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise InvalidRequestError(f"metadata must be a mapping, got {type(metadata).__name__}")
    return {str(k): v for k, v in metadata.items()}


class Memory:
    """
    Semantic memory store scoped by owner.

    Usage::

        memory = Memory({"vector_store": {"provider": "qdrant", "url": "http://localhost:6333"}})
        result = await memory.add("I moved to Lisbon last spring.", owner_id="alice")
        hits = await memory.search("where does alice live?", owner_id="alice")
    """

    def __init__(
        self,
        config: MemoryConfig | Mapping[str, Any] | None = None,
        *,
        extractor: FactExtractor | None = None,
        embedder: Embedder | None = None,
        index: VectorIndex | None = None,
        hooks: HookRegistry | None = None,
    ):
        """
        Args:
            config: ``MemoryConfig``, a mapping of recognised keys, or None for defaults
            extractor: Fact extractor; built from ``config.llm`` when omitted
            embedder: Embedder; built from ``config.embedder`` when omitted
            index: Vector index; built from ``config.vector_store`` when omitted
            hooks: Lifecycle hook registry

        Raises:
            ConfigurationError: malformed configuration (no adapter is contacted)
        """
        self.config = load_config(config)
        self.hooks = hooks or HookRegistry()

        self.embedder = embedder or create_embedder(self.config.embedder)
        self.extractor = extractor or create_fact_extractor(self.config)
        dimensions = getattr(self.embedder, "dimensions", None) or self.config.embedder.dimensions
        self.index = index or create_vector_index(self.config.vector_store, dimensions)

        self._history_db = HistoryDB(self.config.history_db_path) if self.config.history_db_path else None
        self.repository = MemoryRepository(self.index, self.embedder, history_db=self._history_db)
        self.reconciler = ReconciliationEngine(
            self.repository,
            self.extractor,
            self.embedder,
            self.index,
            neighbor_count=self.config.reconcile.neighbor_count,
            max_conflict_retries=self.config.reconcile.max_conflict_retries,
        )
        self.query_engine = QueryEngine(
            self.repository,
            self.embedder,
            self.index,
            overfetch_factor=self.config.search.overfetch_factor,
            score_normalization=self.config.search.score_normalization,
        )

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self.index.initialize()
            if self._history_db is not None:
                await self._history_db.initialize()
            self._initialized = True

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def add(
        self,
        content: str,
        owner_id: str,
        metadata: Mapping[str, Any] | None = None,
        infer: bool = True,
        timeout: float | None = None,
    ) -> AddResult:
        """
        Extract facts from *content* and reconcile them into the owner's memories.

        Args:
            content: Raw input text
            owner_id: Owner scope
            metadata: Merged into the metadata of every stored fact
            infer: When False, store *content* as a single fact without calling the extractor
            timeout: Deadline in seconds (defaults to ``adapter_timeout``)

        Returns:
            One entry per extracted fact, in extraction order

        Raises:
            InvalidRequestError: empty content or owner
            HookValidationError: a pre_add hook vetoed the call
            OperationTimeoutError: deadline passed; ``partial_result`` lists applied actions
            AdapterError: an adapter failed
        """
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequestError("content must be a non-empty string")
        _check_owner(owner_id)
        metadata = _check_metadata(metadata)
        if timeout is not None and timeout <= 0:
            raise InvalidRequestError(f"timeout must be positive, got {timeout}")

        await self.hooks.fire_pre("pre_add", AddEvent(content=content, owner_id=owner_id, metadata=metadata, infer=infer))
        await self._ensure_initialized()

        result = await self.reconciler.run(
            owner_id,
            content,
            metadata=metadata,
            infer=infer,
            timeout=timeout if timeout is not None else self.config.adapter_timeout,
        )

        actions = ", ".join(f"{e.action_taken.value}:{(e.item_id or '-')[:8]}" for e in result)
        logger.info(f"add for owner {owner_id}: {actions or 'no facts extracted'}")
        await self.hooks.fire_post(
            "post_add",
            AddEvent(
                content=content,
                owner_id=owner_id,
                metadata=metadata,
                infer=infer,
                item_ids=[e.item_id for e in result if e.item_id],
            ),
        )
        return result

    async def update(
        self,
        memory_id: str,
        new_content: str,
        metadata: Mapping[str, Any] | None = None,
        replace_metadata: bool = False,
        expected_version: int | None = None,
    ) -> MemoryItem:
        """
        Replace the content of a memory (and optionally patch its metadata).

        Without ``expected_version`` the update is applied on top of whatever
        version is current, retrying on concurrent changes. With it, a stale
        version raises ``ConcurrencyConflictError``.

        Raises:
            NotFoundError: unknown or deleted id
            ConcurrencyConflictError: stale ``expected_version`` or retries exhausted
        """
        if not isinstance(memory_id, str) or not memory_id:
            raise NotFoundError(str(memory_id))
        if not isinstance(new_content, str) or not new_content.strip():
            raise InvalidRequestError("new_content must be a non-empty string")
        metadata_patch = _check_metadata(metadata) if metadata is not None else None

        await self.hooks.fire_pre(
            "pre_update",
            UpdateEvent(memory_id=memory_id, content=new_content, metadata=metadata_patch, version=expected_version),
        )
        await self._ensure_initialized()

        attempts = 1 if expected_version is not None else self.config.reconcile.max_conflict_retries + 1
        for attempt in range(attempts):
            try:
                item = await self.repository.update(
                    memory_id,
                    content=new_content,
                    metadata_patch=metadata_patch,
                    replace_metadata=replace_metadata,
                    expected_version=expected_version,
                )
                break
            except ConcurrencyConflictError:
                if attempt + 1 >= attempts:
                    raise
                logger.warning(f"Concurrent change on {memory_id[:8]}..., retrying update (attempt {attempt + 1})")

        await self.hooks.fire_post(
            "post_update",
            UpdateEvent(memory_id=memory_id, content=item.content, metadata=item.metadata, version=item.version),
        )
        return item

    async def delete(self, memory_id: str) -> bool:
        """Delete a memory; returns False (never raises) when it does not exist."""
        if not isinstance(memory_id, str) or not memory_id:
            return False
        await self.hooks.fire_pre("pre_delete", DeleteEvent(memory_id=memory_id))
        await self._ensure_initialized()

        deleted = await self.repository.delete(memory_id)
        await self.hooks.fire_post("post_delete", DeleteEvent(memory_id=memory_id, deleted=deleted))
        return deleted

    async def delete_all(self, owner_id: str) -> int:
        """Delete every memory of *owner_id*; other owners are untouched."""
        _check_owner(owner_id)
        await self._ensure_initialized()
        return await self.repository.delete_all(owner_id)

    async def reset(self) -> None:
        """Drop all memories, index points and history."""
        await self._ensure_initialized()
        await self.repository.reset()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        owner_id: str,
        limit: int | None = None,
        filters: Mapping[str, Any] | None = None,
        score_threshold: float | None = None,
    ) -> list[SearchResult]:
        """
        Rank the owner's memories by similarity to *query*.

        Args:
            query: Query text
            owner_id: Owner scope
            limit: Maximum results (defaults to ``search.default_limit``)
            filters: Exact-match metadata conditions
            score_threshold: Minimum normalised score (defaults to ``search.score_threshold``)

        Raises:
            InvalidRequestError: limit <= 0
            AdapterError: embedder or index failure
        """
        _check_owner(owner_id)
        await self._ensure_initialized()

        results = await self.query_engine.search(
            owner_id,
            query,
            limit=self.config.search.default_limit if limit is None else limit,
            score_threshold=self.config.search.score_threshold if score_threshold is None else score_threshold,
            metadata_filter=_check_metadata(filters) or None,
        )
        await self.hooks.fire_post(
            "post_search",
            SearchEvent(
                query=query,
                owner_id=owner_id,
                result_ids=[r.memory.id for r in results],
                result_count=len(results),
            ),
        )
        return results

    async def get(self, memory_id: str) -> MemoryItem | None:
        """Current snapshot of a memory, or None when unknown or deleted."""
        await self._ensure_initialized()
        return await self.repository.read(memory_id)

    async def get_all(self, owner_id: str, limit: int | None = None, offset: int = 0) -> list[MemoryItem]:
        """All memories of *owner_id*, oldest first."""
        _check_owner(owner_id)
        await self._ensure_initialized()
        return await self.repository.list(owner_id, limit=limit, offset=offset)

    async def history(self, memory_id: str) -> list[HistoryRecord]:
        """Applied ADD/UPDATE/DELETE records for a memory, oldest first."""
        await self._ensure_initialized()
        return await self.repository.history(memory_id)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def export(self, owner_id: str, path: str) -> ExportResult:
        """Write the owner's memories to *path* as JSONL, oldest first.

        Each line is the item's index payload, so ids, versions, metadata and
        timestamps survive a round trip through ``import_``.
        """
        _check_owner(owner_id)
        await self._ensure_initialized()

        records = [item.to_payload() for item in await self.repository.list(owner_id)]
        loop = asyncio.get_running_loop()
        exported = await loop.run_in_executor(None, write_jsonl, path, records)
        logger.info(f"Exported {exported} memories for owner {owner_id} to {path}")
        return ExportResult(path=path, exported=exported)

    async def import_(self, path: str) -> ImportResult:
        """
        Restore memories from a JSONL file written by ``export``.

        Items keep their original ids. A record whose id is already stored, or
        was deleted earlier in this process, is skipped. Unreadable lines and
        per-item adapter failures are collected in ``errors`` and do not stop
        the import. No extraction or reconciliation runs.

        Raises:
            OSError: *path* cannot be read
        """
        await self._ensure_initialized()
        loop = asyncio.get_running_loop()
        records, errors = await loop.run_in_executor(None, read_jsonl, path)
        result = ImportResult(path=path, total=len(records) + len(errors), errors=errors)

        for line_number, record in records:
            try:
                item = MemoryItem.from_payload(record.get("memory_id") or "", record)
            except (KeyError, TypeError, ValidationError) as e:
                result.errors.append(f"line {line_number}: not a memory record: {e}")
                continue
            try:
                restored = await self.repository.restore(item)
            except AdapterError as e:
                result.errors.append(f"line {line_number}: {e}")
                continue
            if restored:
                result.imported += 1
            else:
                result.skipped += 1

        logger.info(
            f"Imported {result.imported} memories from {path} "
            f"({result.skipped} skipped, {len(result.errors)} errors)"
        )
        return result

    async def close(self) -> None:
        """Release adapter resources."""
        await self.index.close()
        aclose = getattr(self.extractor, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._history_db is not None:
            await self._history_db.close()
        self._initialized = False
