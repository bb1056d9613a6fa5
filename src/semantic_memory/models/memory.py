"""Memory-related data models.

Pydantic v2 ``MemoryItem`` with float/ISO timestamp synchronisation and the
payload mapping used to persist items alongside their vectors.
"""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Self

from dateutil import parser as dateutil_parser
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..utils.hashing import generate_content_hash
from .validators import ContentHash, Metadata, MemoryId, OwnerId, Version

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Timestamp helpers (module-level, shared by model validator and touch())
# ---------------------------------------------------------------------------


def _iso_to_float(iso_str: str) -> float:
    """Convert ISO string to float timestamp, ensuring UTC interpretation."""
    parsed = dateutil_parser.isoparse(iso_str)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def _sync_pair(
    ts_float: float | None,
    ts_iso: str | None,
    now: float,
    label: str,
) -> tuple[float, str]:
    """Synchronise a (float, iso) timestamp pair.

    The float value is authoritative when both are present; whichever is
    missing is derived from the other, and ``now`` fills a missing pair.
    """
    if ts_float is not None:
        return ts_float, _float_to_iso(ts_float)

    if ts_iso:
        try:
            return _iso_to_float(ts_iso), ts_iso
        except (ValueError, OverflowError) as e:
            logger.warning("Invalid %s_iso %r: %s, using current time", label, ts_iso, e)

    return now, _float_to_iso(now)


def _safe_float(v: Any) -> float | None:
    """Convert *v* to float, returning None on failure or non-finite values."""
    try:
        result = float(v)
        return result if math.isfinite(result) else None
    except (TypeError, ValueError):
        return None


def _safe_int(v: Any, default: int = 1) -> int:
    """Convert *v* to a positive int, returning *default* on failure."""
    try:
        result = int(v)
        return result if result >= 1 else default
    except (TypeError, ValueError):
        return default


def next_timestamp(previous: float | None) -> float:
    """Current time, forced strictly past *previous*."""
    now = time.time()
    if previous is not None and now <= previous:
        now = math.nextafter(previous, math.inf)
    return now


# ---------------------------------------------------------------------------
# MemoryItem
# ---------------------------------------------------------------------------


class MemoryItem(BaseModel):
    """A single stored fact.

    ``id`` and ``owner_id`` never change after creation; ``content`` and
    ``metadata`` are mutable and every mutation bumps ``updated_at`` and
    ``version``. The embedding is held by the vector index, keyed by ``id``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: MemoryId
    content: str = Field(min_length=1)
    owner_id: OwnerId
    content_hash: ContentHash
    metadata: Metadata = Field(default_factory=dict)
    version: Version = 1

    # Timestamps: model_validator syncs float <-> ISO automatically
    created_at: float | None = None
    created_at_iso: str | None = None
    updated_at: float | None = None
    updated_at_iso: str | None = None

    @model_validator(mode="after")
    def sync_timestamps(self) -> Self:
        """Synchronise float and ISO timestamp pairs, filling in missing values."""
        now = time.time()

        self.created_at, self.created_at_iso = _sync_pair(self.created_at, self.created_at_iso, now, "created_at")
        self.updated_at, self.updated_at_iso = _sync_pair(self.updated_at, self.updated_at_iso, now, "updated_at")
        return self

    def touch(self) -> None:
        """Move ``updated_at`` strictly forward to the current time."""
        now = next_timestamp(self.updated_at)
        self.updated_at = now
        self.updated_at_iso = _float_to_iso(now)

    def snapshot(self) -> "MemoryItem":
        """Detached copy safe to hand to callers."""
        return self.model_copy(deep=True)

    def to_payload(self) -> dict[str, Any]:
        """Convert to the payload stored next to the vector in the index."""
        return {
            "memory_id": self.id,
            "content": self.content,
            "owner_id": self.owner_id,
            "content_hash": self.content_hash,
            "metadata": self.metadata,
            "version": self.version,
            "created_at": self.created_at,
            "created_at_iso": self.created_at_iso,
            "updated_at": self.updated_at,
            "updated_at_iso": self.updated_at_iso,
        }

    @classmethod
    def from_payload(cls, memory_id: str, payload: dict[str, Any]) -> "MemoryItem":
        """Rebuild an item from an index payload.

        Tolerates legacy/malformed numeric fields and a missing content hash
        rather than failing the read.
        """
        return cls(
            id=payload.get("memory_id") or memory_id,
            content=payload["content"],
            owner_id=payload["owner_id"],
            content_hash=payload.get("content_hash") or generate_content_hash(payload["content"]),
            metadata=payload.get("metadata") or {},
            version=_safe_int(payload.get("version")),
            created_at=_safe_float(payload.get("created_at")),
            created_at_iso=payload.get("created_at_iso"),
            updated_at=_safe_float(payload.get("updated_at")),
            updated_at_iso=payload.get("updated_at_iso"),
        )
