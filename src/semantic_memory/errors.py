"""Error taxonomy for the semantic memory engine.

Every error raised across the public surface derives from MemoryEngineError.
Some also derive from a builtin so hosts can catch them by category:

* ConfigurationError is a TypeError (malformed configuration shape)
* InvalidRequestError is a ValueError
* AdapterConnectionError is a ConnectionError
* OperationTimeoutError is a TimeoutError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.results import AddResult


class MemoryEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(MemoryEngineError, TypeError):
    """Raised at construction when the configuration has the wrong shape or type."""


class InvalidRequestError(MemoryEngineError, ValueError):
    """Raised when an operation is called with invalid arguments (e.g. limit <= 0)."""


class NotFoundError(MemoryEngineError):
    """Raised when an operation targets an unknown or deleted memory id."""

    def __init__(self, memory_id: str, message: str | None = None):
        self.memory_id = memory_id
        super().__init__(message or f"Memory not found: {memory_id}")


class ConcurrencyConflictError(MemoryEngineError):
    """Raised when a mutation targets a stale version of a memory item."""

    def __init__(self, memory_id: str, expected_version: int, actual_version: int):
        self.memory_id = memory_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on memory {memory_id}: expected version {expected_version}, found {actual_version}"
        )


class AdapterError(MemoryEngineError):
    """Failure reported by an external collaborator (extractor, embedder, vector index)."""

    retryable = False

    def __init__(self, adapter: str, message: str):
        self.adapter = adapter
        super().__init__(f"{adapter} adapter error: {message}")


class TransientAdapterError(AdapterError):
    """Adapter failure that may succeed if the caller retries."""

    retryable = True


class AdapterConnectionError(AdapterError, ConnectionError):
    """Adapter unreachable or rejected our credentials."""


class ClassificationError(MemoryEngineError):
    """The merge classifier returned an unusable answer for a single candidate fact."""


class OperationTimeoutError(MemoryEngineError, TimeoutError):
    """An ``add`` call ran past its deadline.

    ``partial_result`` holds the actions already applied before the deadline;
    those are not rolled back.
    """

    def __init__(self, message: str, partial_result: AddResult | None = None):
        self.partial_result = partial_result
        super().__init__(message)


class HookValidationError(MemoryEngineError):
    """Raised by a pre-hook to reject a memory operation."""
