"""
Sentence-transformers embedder.

The model is loaded lazily on first use and inference runs in the default
executor so the event loop is never blocked by the forward pass.
"""

import asyncio
import logging
import threading

from sentence_transformers import SentenceTransformer

from ..errors import AdapterError
from .base import EmbeddingPurpose

logger = logging.getLogger(__name__)

# Common embedding model dimensions, used to size the index before the model loads
KNOWN_MODEL_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "intfloat/e5-small": 384,
    "intfloat/e5-base": 768,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "Snowflake/snowflake-arctic-embed-s-v2.0": 384,
    "Snowflake/snowflake-arctic-embed-m-v2.0": 768,
}


def known_dimensions(model_name: str) -> int | None:
    """Dimensions for a well-known model name, or None."""
    for known_model, dims in KNOWN_MODEL_DIMENSIONS.items():
        if model_name == known_model or model_name.endswith(f"/{known_model}"):
            return dims
    return None


class SentenceTransformerEmbedder:
    """Embedder backed by a local sentence-transformers model."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str | None = None, dimensions: int | None = None):
        self.model_name = model_name
        self.device = device
        self.dimensions = dimensions or known_dimensions(model_name)
        self._model: SentenceTransformer | None = None
        self._model_lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        # Double-checked so concurrent first calls load the model once
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name, device=self.device, trust_remote_code=True)
                    logger.info(f"Loaded model: {self.model_name} on device: {self._model.device}")
        return self._model

    def _encode(self, text: str, purpose: EmbeddingPurpose) -> list[float]:
        """
        Generate an embedding for text.

        For instruction-tuned models (E5, Nomic, Arctic), ``purpose`` selects the
        model's configured prompt ("passage: " / "query: "). Models without
        prompts encode the raw text.
        """
        model = self._load_model()
        prompts = getattr(model, "prompts", None) or {}
        if purpose in prompts:
            embeddings = model.encode(text, prompt_name=purpose, convert_to_tensor=False)
        else:
            embeddings = model.encode(text, convert_to_tensor=False)
        embedding_list = embeddings.tolist() if hasattr(embeddings, "tolist") else list(embeddings)

        if not embedding_list:
            raise ValueError("Generated embedding is empty")

        if self.dimensions is None:
            self.dimensions = len(embedding_list)
            logger.info(f"Detected vector size from actual embedding: {self.dimensions}")
        return [float(x) for x in embedding_list]

    async def embed(self, text: str, purpose: EmbeddingPurpose = "passage") -> list[float]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._encode, text, purpose)
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e.__class__.__name__}: {str(e)}")
            raise AdapterError("embedder", str(e)) from e
