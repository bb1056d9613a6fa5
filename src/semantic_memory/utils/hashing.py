"""Content hashing for exact-duplicate detection."""

import hashlib
import re

_WHITESPACE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Collapse runs of whitespace and trim, so formatting alone never defeats dedup."""
    return _WHITESPACE.sub(" ", content).strip()


def generate_content_hash(content: str) -> str:
    """SHA-256 hex digest of the whitespace-normalised content."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()
