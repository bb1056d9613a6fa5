"""
Reconciliation engine.

Maps each candidate fact to one structural action against the owner's
nearest existing memories, then applies it through the repository:

1. Embed the candidate and fetch the top-K neighbours for the owner.
2. An exact content-hash match with a neighbour is a NOOP without asking
   the classifier.
3. Otherwise the classifier judges the candidate against each neighbour in
   score order; the first non-ADD verdict wins, all-ADD means ADD.
4. Apply. An UPDATE whose target vanished becomes an ADD, a DELETE whose
   target vanished becomes a NOOP. A version conflict re-runs the decision
   for that candidate against fresh state.

Candidates of one ``add`` call are handled sequentially in extraction
order, so each one sees what the previous ones applied.
"""

import asyncio
import logging
from typing import Any

from .adapters.base import Embedder, FactExtractor, VectorIndex
from .errors import ClassificationError, ConcurrencyConflictError, NotFoundError, OperationTimeoutError
from .models.actions import (
    Action,
    ActionKind,
    AddAction,
    DeleteAction,
    NoopAction,
    UpdateAction,
)
from .models.memory import MemoryItem
from .models.results import AddResult, AddResultEntry, CandidateFact
from .repository import MemoryRepository
from .utils.hashing import generate_content_hash

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Decides and applies ADD/UPDATE/DELETE/NOOP for candidate facts."""

    def __init__(
        self,
        repository: MemoryRepository,
        extractor: FactExtractor,
        embedder: Embedder,
        index: VectorIndex,
        neighbor_count: int = 5,
        max_conflict_retries: int = 2,
    ):
        self.repository = repository
        self.extractor = extractor
        self.embedder = embedder
        self.index = index
        self.neighbor_count = neighbor_count
        self.max_conflict_retries = max_conflict_retries

    async def find_neighbors(self, owner_id: str, vector: list[float]) -> list[MemoryItem]:
        """Current snapshots of the owner's nearest memories, best first.

        Hits the repository no longer knows (deleted, stale index points) are skipped.
        """
        hits = await self.index.query(owner_id, vector, self.neighbor_count)
        neighbors = []
        for hit in hits:
            item = await self.repository.read(hit.id)
            if item is not None and item.owner_id == owner_id:
                neighbors.append(item)
        return neighbors

    async def reconcile(
        self,
        owner_id: str,
        candidate: CandidateFact,
        existing_context: list[MemoryItem],
        classify: bool = True,
    ) -> Action:
        """Decide the action for *candidate* given its neighbours.

        Raises:
            ClassificationError: the classifier's verdict was unusable.
            AdapterError: the classifier could not be reached.
        """
        candidate_hash = generate_content_hash(candidate.content)
        for neighbor in existing_context:
            if neighbor.content_hash == candidate_hash:
                return NoopAction(target_id=neighbor.id, reason="exact duplicate of existing memory")

        if classify:
            for neighbor in existing_context:
                hint = await self.extractor.classify(candidate.content, neighbor)
                if hint.kind == ActionKind.ADD:
                    continue
                if hint.kind == ActionKind.UPDATE:
                    return UpdateAction(
                        target_id=neighbor.id,
                        new_content=hint.text or candidate.content,
                        metadata_patch=candidate.metadata,
                        expected_version=neighbor.version,
                        reason=hint.reason,
                    )
                if hint.kind == ActionKind.DELETE:
                    return DeleteAction(target_id=neighbor.id, expected_version=neighbor.version, reason=hint.reason)
                return NoopAction(target_id=neighbor.id, reason=hint.reason)

        return AddAction(content=candidate.content, metadata=candidate.metadata)

    async def _add(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any],
        vector: list[float] | None,
        candidate: str,
        note: str | None = None,
    ) -> AddResultEntry:
        item, created = await self.repository.create_unique(owner_id, content, metadata, vector)
        if not created:
            return AddResultEntry(
                item_id=item.id,
                action_taken=ActionKind.NOOP,
                item_snapshot=item,
                candidate=candidate,
                note="exact duplicate of existing memory",
            )
        return AddResultEntry(
            item_id=item.id, action_taken=ActionKind.ADD, item_snapshot=item, candidate=candidate, note=note
        )

    async def apply(
        self,
        owner_id: str,
        action: Action,
        candidate: CandidateFact,
        vector: list[float] | None = None,
        neighbors: list[MemoryItem] | None = None,
    ) -> AddResultEntry:
        """Apply *action* and describe the outcome.

        ``vector`` is the candidate's embedding, reused when the stored
        content is the candidate text.

        Raises:
            ConcurrencyConflictError: the target moved past the version the decision was based on.
        """
        by_id = {n.id: n for n in neighbors or []}

        if isinstance(action, AddAction):
            return await self._add(owner_id, action.content, action.metadata, vector, candidate.content)

        if isinstance(action, UpdateAction):
            reuse = vector if action.new_content == candidate.content else None
            previous = by_id.get(action.target_id)
            try:
                item = await self.repository.update(
                    action.target_id,
                    content=action.new_content,
                    metadata_patch=action.metadata_patch,
                    expected_version=action.expected_version,
                    vector=reuse,
                )
            except NotFoundError:
                logger.warning(f"UPDATE target {action.target_id[:8]}... vanished, adding as new memory")
                return await self._add(
                    owner_id,
                    action.new_content,
                    action.metadata_patch,
                    reuse,
                    candidate.content,
                    note=f"update target {action.target_id} no longer exists; added as new memory",
                )
            return AddResultEntry(
                item_id=item.id,
                action_taken=ActionKind.UPDATE,
                item_snapshot=item,
                candidate=candidate.content,
                previous_content=previous.content if previous else None,
                note=action.reason,
            )

        if isinstance(action, DeleteAction):
            previous = by_id.get(action.target_id)
            deleted = await self.repository.delete(action.target_id, expected_version=action.expected_version)
            if not deleted:
                logger.warning(f"DELETE target {action.target_id[:8]}... already gone, recording NOOP")
                return AddResultEntry(
                    item_id=action.target_id,
                    action_taken=ActionKind.NOOP,
                    candidate=candidate.content,
                    note=f"delete target {action.target_id} no longer exists",
                )
            return AddResultEntry(
                item_id=action.target_id,
                action_taken=ActionKind.DELETE,
                item_snapshot=previous,
                candidate=candidate.content,
                previous_content=previous.content if previous else None,
                note=action.reason,
            )

        if isinstance(action, NoopAction):
            snapshot = await self.repository.read(action.target_id) if action.target_id else None
            return AddResultEntry(
                item_id=action.target_id,
                action_taken=ActionKind.NOOP,
                item_snapshot=snapshot,
                candidate=candidate.content,
                note=action.reason,
                error=action.error,
            )

        raise TypeError(f"Unhandled action: {action!r}")

    async def _decide(
        self, owner_id: str, candidate: CandidateFact, classify: bool
    ) -> tuple[Action, list[float], list[MemoryItem]]:
        vector = await self.embedder.embed(candidate.content, "passage")
        neighbors = await self.find_neighbors(owner_id, vector)
        try:
            action = await self.reconcile(owner_id, candidate, neighbors, classify=classify)
        except ClassificationError as e:
            logger.warning(f"Classification failed for candidate {candidate.content[:40]!r}: {e}")
            action = NoopAction(reason="classification failed", error=str(e))
        return action, vector, neighbors

    async def process(
        self,
        owner_id: str,
        candidate: CandidateFact,
        classify: bool = True,
        deadline: float | None = None,
    ) -> AddResultEntry:
        """Decide and apply one candidate, retrying the decision on version conflicts.

        The decision phase is bounded by *deadline* (event loop time); once an
        action is chosen it is applied to completion.
        """
        loop = asyncio.get_running_loop()
        conflict: ConcurrencyConflictError | None = None

        for attempt in range(self.max_conflict_retries + 1):
            decision = self._decide(owner_id, candidate, classify)
            if deadline is None:
                action, vector, neighbors = await decision
            else:
                action, vector, neighbors = await asyncio.wait_for(decision, max(0.0, deadline - loop.time()))

            try:
                return await self.apply(owner_id, action, candidate, vector, neighbors)
            except ConcurrencyConflictError as e:
                conflict = e
                logger.warning(
                    f"Version conflict on {e.memory_id[:8]}... (attempt {attempt + 1}), re-reconciling candidate"
                )

        return AddResultEntry(
            item_id=conflict.memory_id if conflict else None,
            action_taken=ActionKind.NOOP,
            candidate=candidate.content,
            note=f"gave up after {self.max_conflict_retries + 1} version conflicts",
        )

    async def run(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        infer: bool = True,
        timeout: float | None = None,
    ) -> AddResult:
        """Extract candidates from *content* and reconcile them in order.

        Raises:
            OperationTimeoutError: the deadline passed; carries the entries applied so far.
            AdapterError: an adapter failed; nothing further is applied.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        result = AddResult()
        metadata = dict(metadata or {})

        try:
            if infer:
                extraction = self.extractor.extract(content)
                facts = await (extraction if deadline is None else asyncio.wait_for(extraction, timeout))
            else:
                facts = [CandidateFact(content=content, metadata=metadata)]

            logger.debug(f"Reconciling {len(facts)} candidate facts for owner {owner_id}")
            for fact in facts:
                candidate = CandidateFact(content=fact.content, metadata={**fact.metadata, **metadata})
                result.entries.append(await self.process(owner_id, candidate, classify=infer, deadline=deadline))
        except TimeoutError as e:
            logger.warning(f"add for owner {owner_id} timed out after {timeout}s with {len(result)} actions applied")
            raise OperationTimeoutError(
                f"add timed out after {timeout}s ({len(result)} actions applied)", partial_result=result
            ) from e

        return result
