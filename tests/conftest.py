import hashlib
import math
import os
import re
import sys

import pytest

# Force CPU-only mode for tests (avoids CUDA compatibility issues)
os.environ["CUDA_VISIBLE_DEVICES"] = ""

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from semantic_memory.adapters.memory_index import InMemoryVectorIndex  # noqa: E402
from semantic_memory.memory import Memory  # noqa: E402
from semantic_memory.models.actions import ClassificationHint  # noqa: E402
from semantic_memory.models.results import CandidateFact  # noqa: E402
from semantic_memory.repository import MemoryRepository  # noqa: E402

_WORD = re.compile(r"[a-z0-9]+")


class FakeEmbedder:
    """Deterministic bag-of-words embedder: shared words mean higher cosine similarity."""

    dimensions = 64

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    async def embed(self, text, purpose="passage"):
        self.calls.append((text, purpose))
        if self.fail_with is not None:
            raise self.fail_with
        vector = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(x * x for x in vector)) or 1.0
        return [x / norm for x in vector]


class FakeExtractor:
    """Splits input into sentences; classifies with configurable rules.

    ``rules`` maps ``(candidate, neighbor_content)`` to a ClassificationHint (or an
    exception instance to raise). Unmatched pairs are classified ADD.
    """

    def __init__(self):
        self.rules: dict[tuple[str, str], object] = {}
        self.classify_calls: list[tuple[str, str]] = []
        self.extract_calls: list[str] = []
        self.fail_with: Exception | None = None

    async def extract(self, text):
        self.extract_calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        return [CandidateFact(content=part.strip()) for part in re.split(r"[.\n]", text) if part.strip()]

    async def classify(self, candidate, neighbor):
        self.classify_calls.append((candidate, neighbor.content))
        verdict = self.rules.get((candidate, neighbor.content))
        if isinstance(verdict, Exception):
            raise verdict
        if verdict is None:
            return ClassificationHint(kind="ADD")
        return verdict


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def repository(index, embedder):
    return MemoryRepository(index, embedder)


@pytest.fixture
def memory(extractor, embedder, index):
    return Memory(extractor=extractor, embedder=embedder, index=index)

