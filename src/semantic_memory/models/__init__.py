"""Data models for the semantic memory engine."""

from .actions import (
    Action,
    ActionKind,
    AddAction,
    ClassificationHint,
    DeleteAction,
    NoopAction,
    UpdateAction,
)
from .history import HistoryRecord
from .memory import MemoryItem
from .results import AddResult, AddResultEntry, CandidateFact, ExportResult, ImportResult, IndexHit, SearchResult

__all__ = [
    "Action",
    "ActionKind",
    "AddAction",
    "AddResult",
    "AddResultEntry",
    "CandidateFact",
    "ClassificationHint",
    "DeleteAction",
    "ExportResult",
    "HistoryRecord",
    "ImportResult",
    "IndexHit",
    "MemoryItem",
    "NoopAction",
    "SearchResult",
    "UpdateAction",
]
