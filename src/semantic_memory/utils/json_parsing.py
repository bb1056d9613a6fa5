"""
Parsing helpers for LLM JSON responses.

Models wrap JSON in code fences, prepend reasoning in ``<think>`` blocks, or
add a sentence of preamble. These helpers peel that off before ``json.loads``.
"""

from __future__ import annotations

import json
import re
from typing import Any

from ..errors import ClassificationError
from ..models.actions import ClassificationHint
from ..models.results import CandidateFact

_CODE_BLOCK = re.compile(r"```(?:[a-zA-Z0-9]+)?\s*([\s\S]*?)\s*```")
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")


def remove_code_blocks(text: str) -> str:
    """Strip ``<think>`` blocks and unwrap the first fenced code block, if any."""
    text = _THINK_BLOCK.sub("", text).strip()
    match = _CODE_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return text


def extract_json(text: str) -> Any:
    """Parse the JSON object embedded in *text*.

    Falls back to the outermost ``{...}`` span when the response carries
    prose around the object.

    Raises:
        ValueError: if no JSON object can be parsed.
    """
    cleaned = remove_code_blocks(text)
    if not cleaned:
        raise ValueError("Empty LLM response")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError(f"No JSON object in LLM response: {cleaned[:80]!r}") from None
        return json.loads(cleaned[start : end + 1])


def parse_facts(text: str) -> list[CandidateFact]:
    """Parse a ``{"facts": [...]}`` extraction response.

    Facts may be plain strings or ``{"content": ..., "metadata": {...}}``
    objects. Blank facts are dropped; an empty response means no facts.
    """
    if not text or not text.strip():
        return []

    data = extract_json(text)
    if not isinstance(data, dict) or not isinstance(data.get("facts", []), list):
        raise ValueError("Extraction response must be an object with a 'facts' list")

    facts: list[CandidateFact] = []
    for raw in data.get("facts", []):
        if isinstance(raw, str):
            if raw.strip():
                facts.append(CandidateFact(content=raw.strip()))
        elif isinstance(raw, dict) and str(raw.get("content", "")).strip():
            facts.append(CandidateFact(content=str(raw["content"]).strip(), metadata=raw.get("metadata") or {}))
    return facts


def parse_classification(text: str) -> ClassificationHint:
    """Parse a ``{"event": ..., "text": ..., "reason": ...}`` merge decision.

    Raises:
        ClassificationError: when the response is not a usable verdict.
    """
    try:
        data = extract_json(text)
        if not isinstance(data, dict):
            raise ValueError("classification must be a JSON object")
        return ClassificationHint(
            kind=data.get("event", data.get("action")),
            text=data.get("text") or None,
            reason=data.get("reason"),
        )
    except (ValueError, TypeError) as e:
        raise ClassificationError(f"Unusable classification response: {e}") from e
