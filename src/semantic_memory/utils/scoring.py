"""
Score normalisation for vector index results.

Indexes report similarity in metric-specific ranges (cosine in [-1, 1],
unbounded dot products, Euclidean distances where lower is better). Callers
only ever see a score in [0, 1] where higher means more similar. The mapping
is selected by name so it can be configured per deployment.
"""

from __future__ import annotations

import math
from collections.abc import Callable

ScoreMapper = Callable[[float], float]


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def cosine_to_unit(score: float) -> float:
    """Cosine similarity [-1, 1] → [0, 1]."""
    return _clamp((score + 1.0) / 2.0)


def dot_to_unit(score: float) -> float:
    """Unbounded dot product → (0, 1) via the logistic function."""
    if score >= 0:
        return _clamp(1.0 / (1.0 + math.exp(-score)))
    z = math.exp(score)
    return _clamp(z / (1.0 + z))


def euclidean_to_unit(distance: float) -> float:
    """Euclidean distance [0, inf) → (0, 1], 0 distance = 1.0."""
    return _clamp(1.0 / (1.0 + max(0.0, distance)))


def identity(score: float) -> float:
    """Score already in [0, 1]; only clamp."""
    return _clamp(score)


_MAPPERS: dict[str, ScoreMapper] = {
    "cosine": cosine_to_unit,
    "dot": dot_to_unit,
    "euclidean": euclidean_to_unit,
    "identity": identity,
}

# Index distance metric → default mapping when configured as "auto"
_METRIC_DEFAULTS = {
    "cosine": "cosine",
    "dot": "dot",
    "euclid": "euclidean",
    "euclidean": "euclidean",
}


def get_score_mapper(normalization: str, metric: str | None = None) -> ScoreMapper:
    """Resolve a configured normalisation name to a mapping function.

    Args:
        normalization: One of ``auto``, ``cosine``, ``dot``, ``euclidean``, ``identity``.
        metric: The index's distance metric, consulted when ``normalization`` is ``auto``.

    Raises:
        ValueError: for an unknown name.
    """
    name = normalization.lower()
    if name == "auto":
        name = _METRIC_DEFAULTS.get((metric or "cosine").lower(), "identity")
    try:
        return _MAPPERS[name]
    except KeyError:
        raise ValueError(f"Unknown score normalization: {normalization!r}") from None
