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
Memory repository.

The authoritative in-process view of stored memories. Assigns identities,
stamps timestamps and versions, keeps per-owner indexes for enumeration,
and forwards every mutation to the vector index. Items persisted by an
earlier process are rehydrated from index payloads on demand.

Concurrency: each item has its own ``asyncio.Lock``. Mutations embed
outside the lock, then re-check the item's version inside it, so a
concurrent change surfaces as ``ConcurrencyConflictError`` instead of a
lost update. Exact-duplicate creation is checked under a per-owner lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any

from pydantic import ValidationError

from .adapters.base import Embedder, VectorIndex
from .errors import ConcurrencyConflictError, InvalidRequestError, NotFoundError
from .models.history import HistoryEvent, HistoryRecord
from .models.memory import MemoryItem
from .storage.history_db import HistoryDB
from .utils.hashing import generate_content_hash

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10_000


def _require_text(value: str | None, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{field} must be a non-empty string")
    return value


def apply_metadata_patch(current: dict[str, Any], patch: dict[str, Any] | None, replace: bool = False) -> dict[str, Any]:
    """Per-key upsert of *patch* into *current*; a ``None`` value removes the key.

    With ``replace`` the result holds only the non-null keys of *patch*.
    """
    merged = {} if replace else dict(current)
    for key, value in (patch or {}).items():
        key = str(key)
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class MemoryRepository:
    """Identity, bookkeeping and persistence forwarding for memory items."""

    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        history_db: HistoryDB | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._index = index
        self._embedder = embedder
        self._history_db = history_db

        self._items: dict[str, MemoryItem] = {}
        # owner_id -> ordered set of memory ids
        self._owners: dict[str, dict[str, None]] = {}
        # (owner_id, content_hash) -> memory id
        self._by_hash: dict[tuple[str, str], str] = {}
        # Ids are never reused, even after delete or reset
        self._retired: set[str] = set()
        self._hydrated_owners: set[str] = set()

        self._item_locks: dict[str, asyncio.Lock] = {}
        self._owner_locks: dict[str, asyncio.Lock] = {}
        self._history: deque[HistoryRecord] = deque(maxlen=history_limit)

    @property
    def index(self) -> VectorIndex:
        return self._index

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._items

    # ------------------------------------------------------------------
    # Internal bookkeeping
    # ------------------------------------------------------------------

    def _item_lock(self, memory_id: str) -> asyncio.Lock:
        return self._item_locks.setdefault(memory_id, asyncio.Lock())

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        return self._owner_locks.setdefault(owner_id, asyncio.Lock())

    def _new_id(self) -> str:
        while True:
            memory_id = str(uuid.uuid4())
            if memory_id not in self._items and memory_id not in self._retired:
                return memory_id

    def _register(self, item: MemoryItem) -> None:
        self._items[item.id] = item
        self._owners.setdefault(item.owner_id, {})[item.id] = None
        self._by_hash.setdefault((item.owner_id, item.content_hash), item.id)

    def _unindex_hash(self, item: MemoryItem) -> None:
        key = (item.owner_id, item.content_hash)
        if self._by_hash.get(key) == item.id:
            del self._by_hash[key]

    def _forget(self, memory_id: str) -> MemoryItem | None:
        item = self._items.pop(memory_id, None)
        if item is not None:
            self._owners.get(item.owner_id, {}).pop(memory_id, None)
            self._unindex_hash(item)
        self._item_locks.pop(memory_id, None)
        self._retired.add(memory_id)
        return item

    async def _record(
        self,
        event: HistoryEvent,
        item: MemoryItem,
        old_content: str | None = None,
        new_content: str | None = None,
    ) -> None:
        record = HistoryRecord(
            memory_id=item.id,
            event=event,
            timestamp=time.time(),
            owner_id=item.owner_id,
            old_content=old_content,
            new_content=new_content,
            version=item.version,
            metadata=dict(item.metadata),
        )
        self._history.append(record)
        if self._history_db is not None:
            await self._history_db.add_record(record)

    async def _hydrate(self, memory_id: str) -> MemoryItem | None:
        """Load an item persisted by another process from its index payload."""
        payload = await self._index.get(memory_id)
        if not payload:
            return None
        try:
            item = MemoryItem.from_payload(memory_id, payload)
        except (KeyError, ValidationError) as e:
            logger.warning(f"Ignoring malformed index payload for {memory_id[:8]}...: {e}")
            return None

        # A concurrent delete or load may have won while we awaited the index
        if memory_id in self._retired:
            return None
        existing = self._items.get(memory_id)
        if existing is not None:
            return existing
        self._register(item)
        logger.debug(f"Hydrated memory {memory_id[:8]}... from index")
        return item

    async def _hydrate_owner(self, owner_id: str) -> None:
        if owner_id in self._hydrated_owners:
            return
        async with self._owner_lock(owner_id):
            if owner_id in self._hydrated_owners:
                return
            hits = await self._index.scan(owner_id)
            loaded = 0
            for hit in hits:
                if hit.id in self._items or hit.id in self._retired:
                    continue
                try:
                    item = MemoryItem.from_payload(hit.id, hit.payload)
                except (KeyError, ValidationError) as e:
                    logger.warning(f"Ignoring malformed index payload for {hit.id[:8]}...: {e}")
                    continue
                if item.owner_id == owner_id:
                    self._register(item)
                    loaded += 1
            self._hydrated_owners.add(owner_id)
            if loaded:
                logger.info(f"Hydrated {loaded} memories for owner {owner_id} from index")

    async def _current(self, memory_id: str) -> MemoryItem | None:
        if memory_id in self._retired:
            return None
        item = self._items.get(memory_id)
        if item is None:
            item = await self._hydrate(memory_id)
        return item

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        vector: list[float] | None = None,
    ) -> MemoryItem:
        """Store a new item under a fresh id and return its snapshot.

        Raises:
            InvalidRequestError: empty owner or content.
            AdapterError: embedding or index failure; nothing is recorded.
        """
        item, _ = await self._create(owner_id, content, metadata, vector, unique=False)
        return item

    async def create_unique(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        vector: list[float] | None = None,
    ) -> tuple[MemoryItem, bool]:
        """Like ``create``, unless the owner already holds the exact same content.

        Returns:
            ``(snapshot, created)``; ``created`` is False when an existing
            item with the same content hash was returned instead.
        """
        return await self._create(owner_id, content, metadata, vector, unique=True)

    async def _create(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None,
        vector: list[float] | None,
        unique: bool,
    ) -> tuple[MemoryItem, bool]:
        _require_text(owner_id, "owner_id")
        _require_text(content, "content")
        content_hash = generate_content_hash(content)

        if vector is None:
            vector = await self._embedder.embed(content, "passage")

        async with self._owner_lock(owner_id):
            if unique:
                existing_id = self._by_hash.get((owner_id, content_hash))
                existing = self._items.get(existing_id) if existing_id else None
                if existing is not None:
                    return existing.snapshot(), False

            now = time.time()
            item = MemoryItem(
                id=self._new_id(),
                content=content,
                owner_id=owner_id,
                content_hash=content_hash,
                metadata=apply_metadata_patch({}, metadata),
                version=1,
                created_at=now,
                updated_at=now,
            )
            await self._index.upsert(item.id, vector, item.to_payload())
            self._register(item)

        logger.debug(f"Created memory {item.id[:8]}... for owner {owner_id}")
        await self._record("ADD", item, new_content=content)
        return item.snapshot(), True

    async def read(self, memory_id: str) -> MemoryItem | None:
        """Current snapshot of *memory_id*, or None if unknown or deleted."""
        if not memory_id:
            return None
        item = await self._current(memory_id)
        return item.snapshot() if item is not None else None

    async def update(
        self,
        memory_id: str,
        content: str | None = None,
        metadata_patch: dict[str, Any] | None = None,
        replace_metadata: bool = False,
        expected_version: int | None = None,
        vector: list[float] | None = None,
    ) -> MemoryItem:
        """Apply a content and/or metadata change and return the new snapshot.

        The change is checked against ``expected_version`` when given, or
        against the version observed when the update started otherwise.

        Raises:
            NotFoundError: *memory_id* is unknown or deleted.
            ConcurrencyConflictError: the item moved past the checked version.
        """
        if content is not None:
            _require_text(content, "content")

        base = await self._current(memory_id)
        if base is None:
            raise NotFoundError(memory_id)

        base_version = base.version if expected_version is None else expected_version
        if base.version != base_version:
            raise ConcurrencyConflictError(memory_id, base_version, base.version)

        content_changed = content is not None and content != base.content
        # Embed outside the lock; the version check below catches interleaved writers
        if not content_changed:
            vector = None
        elif vector is None:
            vector = await self._embedder.embed(content, "passage")

        async with self._item_lock(memory_id):
            current = self._items.get(memory_id)
            if current is None or memory_id in self._retired:
                raise NotFoundError(memory_id)
            if current.version != base_version:
                raise ConcurrencyConflictError(memory_id, base_version, current.version)

            updated = current.model_copy(deep=True)
            if content_changed:
                updated.content = content
                updated.content_hash = generate_content_hash(content)
            updated.metadata = apply_metadata_patch(current.metadata, metadata_patch, replace_metadata)
            updated.version = current.version + 1
            updated.touch()

            if vector is not None:
                await self._index.upsert(memory_id, vector, updated.to_payload())
            else:
                await self._index.update_payload(memory_id, updated.to_payload())

            self._unindex_hash(current)
            self._register(updated)

        logger.debug(f"Updated memory {memory_id[:8]}... to version {updated.version}")
        await self._record("UPDATE", updated, old_content=current.content, new_content=updated.content)
        return updated.snapshot()

    async def delete(self, memory_id: str, expected_version: int | None = None) -> bool:
        """Remove *memory_id*; returns False when it was already absent.

        Raises:
            ConcurrencyConflictError: ``expected_version`` is stale.
        """
        if not memory_id or await self._current(memory_id) is None:
            return False

        async with self._item_lock(memory_id):
            current = self._items.get(memory_id)
            if current is None or memory_id in self._retired:
                return False
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflictError(memory_id, expected_version, current.version)

            await self._index.delete(memory_id)
            self._forget(memory_id)

        logger.debug(f"Deleted memory {memory_id[:8]}...")
        await self._record("DELETE", current, old_content=current.content)
        return True

    async def restore(self, item: MemoryItem) -> bool:
        """Re-insert a backed-up item under its original id, version and timestamps.

        Returns False, storing nothing, when the id is live or was retired
        by a delete or reset in this process.

        Raises:
            AdapterError: embedding or index failure; nothing is recorded.
        """
        if item.id in self._retired or await self._current(item.id) is not None:
            return False

        vector = await self._embedder.embed(item.content, "passage")
        async with self._owner_lock(item.owner_id):
            if item.id in self._items or item.id in self._retired:
                return False
            restored = item.model_copy(deep=True, update={"content_hash": generate_content_hash(item.content)})
            await self._index.upsert(restored.id, vector, restored.to_payload())
            self._register(restored)

        logger.debug(f"Restored memory {restored.id[:8]}... for owner {restored.owner_id}")
        await self._record("ADD", restored, new_content=restored.content)
        return True

    async def list(self, owner_id: str, limit: int | None = None, offset: int = 0) -> list[MemoryItem]:
        """Snapshots of *owner_id*'s items, oldest first."""
        _require_text(owner_id, "owner_id")
        if limit is not None and limit <= 0:
            raise InvalidRequestError(f"limit must be positive, got {limit}")
        if offset < 0:
            raise InvalidRequestError(f"offset must be non-negative, got {offset}")

        await self._hydrate_owner(owner_id)
        items = [self._items[i] for i in self._owners.get(owner_id, {}) if i in self._items]
        items.sort(key=lambda item: item.created_at or 0.0)
        end = None if limit is None else offset + limit
        return [item.snapshot() for item in items[offset:end]]

    async def delete_all(self, owner_id: str) -> int:
        """Delete every item of *owner_id*; returns how many were removed."""
        _require_text(owner_id, "owner_id")
        await self._hydrate_owner(owner_id)

        deleted = 0
        for memory_id in list(self._owners.get(owner_id, {})):
            if await self.delete(memory_id):
                deleted += 1
        logger.info(f"Deleted {deleted} memories for owner {owner_id}")
        return deleted

    async def history(self, memory_id: str) -> list[HistoryRecord]:
        """Applied mutations of *memory_id*, oldest first."""
        if self._history_db is not None:
            return await self._history_db.get_history(memory_id)
        return [record for record in self._history if record.memory_id == memory_id]

    async def reset(self) -> None:
        """Drop every item, index point and history record. Ids stay retired."""
        await self._index.reset()
        self._retired.update(self._items)
        self._items.clear()
        self._owners.clear()
        self._by_hash.clear()
        self._hydrated_owners.clear()
        self._item_locks.clear()
        self._history.clear()
        if self._history_db is not None:
            await self._history_db.reset()
        logger.info("Memory repository reset")
