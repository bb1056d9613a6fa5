"""Shared Pydantic types and validators for reuse across models.

Centralises owner-id and content constraints, range-clamped floats, and
metadata normalisation so every model speaks the same language.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BeforeValidator, Field

# ---------------------------------------------------------------------------
# Metadata normalisation
# ---------------------------------------------------------------------------


def normalize_metadata(v: Any) -> dict[str, Any]:
    """Accept ``dict | None`` and return a plain ``dict[str, Any]``.

    * ``None`` → ``{}``
    * non-string keys are stringified
    """
    if v is None:
        return {}
    if isinstance(v, dict):
        return {str(k): val for k, val in v.items()}
    raise ValueError(f"metadata must be a mapping, got {type(v).__name__}")


Metadata = Annotated[dict[str, Any], BeforeValidator(normalize_metadata)]
"""Flexible metadata input: accepts dict or None, always outputs dict[str, Any]."""


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]
"""Float within [0.0, 1.0], used for normalised scores and thresholds."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer ≥ 0, used for offsets."""

Version = Annotated[int, Field(ge=1)]
"""Per-item version counter; starts at 1 on creation."""


# ---------------------------------------------------------------------------
# String constraints
# ---------------------------------------------------------------------------

OwnerId = Annotated[str, Field(min_length=1)]
"""Non-empty owner scope (user/session identifier)."""

MemoryId = Annotated[str, Field(min_length=1)]
"""Non-empty opaque memory identifier."""

ContentHash = Annotated[str, Field(min_length=1)]
"""Non-empty content hash."""
