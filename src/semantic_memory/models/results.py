"""Operation result models.

Typed Pydantic models returned by the engine and exchanged with adapters,
so callers get attribute access instead of ``dict.get`` roulette.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel, Field

from .actions import ActionKind
from .memory import MemoryItem
from .validators import Metadata, UnitFloat

# ---------------------------------------------------------------------------
# Adapter exchange types
# ---------------------------------------------------------------------------


class CandidateFact(BaseModel):
    """One statement extracted from input text, awaiting reconciliation."""

    content: str = Field(min_length=1)
    metadata: Metadata = Field(default_factory=dict)


class IndexHit(BaseModel):
    """One nearest-neighbour hit as reported by the vector index (raw score)."""

    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# add()
# ---------------------------------------------------------------------------


class AddResultEntry(BaseModel):
    """Outcome of reconciling one candidate fact."""

    item_id: str | None = None
    action_taken: ActionKind
    item_snapshot: MemoryItem | None = None
    candidate: str | None = None
    previous_content: str | None = None
    # Why the action differs from what the classifier proposed (demotions, raced targets)
    note: str | None = None
    # Set when the candidate was dropped because its classification failed
    error: str | None = None


class AddResult(BaseModel):
    """Ordered outcomes of one ``add`` call, in extraction order."""

    entries: list[AddResultEntry] = Field(default_factory=list)

    def __iter__(self) -> Iterator[AddResultEntry]:  # type: ignore[override]
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, index: int) -> AddResultEntry:
        return self.entries[index]

    @property
    def has_failures(self) -> bool:
        """True when at least one candidate was dropped because its classification failed."""
        return any(e.error for e in self.entries)

    def by_action(self, kind: ActionKind) -> list[AddResultEntry]:
        return [e for e in self.entries if e.action_taken == kind]


# ---------------------------------------------------------------------------
# search()
# ---------------------------------------------------------------------------


class SearchResult(BaseModel):
    """One ranked hit: a memory snapshot and its normalised similarity."""

    memory: MemoryItem
    score: UnitFloat
    raw_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"memory": self.memory.model_dump(), "score": self.score, "raw_score": self.raw_score}


# ---------------------------------------------------------------------------
# export() / import_()
# ---------------------------------------------------------------------------


class ExportResult(BaseModel):
    path: str
    exported: int = 0


class ImportResult(BaseModel):
    """Outcome of a JSONL restore.

    ``skipped`` counts records whose id is already live or was retired;
    ``errors`` holds one message per unreadable or unstorable line.
    """

    path: str
    total: int = 0
    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return not self.errors
