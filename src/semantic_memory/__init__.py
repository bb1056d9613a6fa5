"""Semantic memory engine: fact reconciliation and owner-scoped similarity search."""

__version__ = "0.1.0"

from .config import MemoryConfig, load_config
from .errors import (
    AdapterConnectionError,
    AdapterError,
    ClassificationError,
    ConcurrencyConflictError,
    ConfigurationError,
    HookValidationError,
    InvalidRequestError,
    MemoryEngineError,
    NotFoundError,
    OperationTimeoutError,
    TransientAdapterError,
)
from .hooks import HookRegistry
from .memory import Memory
from .models import ActionKind, AddResult, AddResultEntry, ExportResult, HistoryRecord, ImportResult, MemoryItem, SearchResult

__all__ = [
    "ActionKind",
    "AdapterConnectionError",
    "AdapterError",
    "AddResult",
    "AddResultEntry",
    "ClassificationError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "ExportResult",
    "HistoryRecord",
    "HookRegistry",
    "HookValidationError",
    "ImportResult",
    "InvalidRequestError",
    "Memory",
    "MemoryConfig",
    "MemoryEngineError",
    "MemoryItem",
    "NotFoundError",
    "OperationTimeoutError",
    "SearchResult",
    "TransientAdapterError",
    "load_config",
]
