# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Adapter factory for the semantic memory engine.

Builds the embedder, fact extractor and vector index from a validated
``MemoryConfig``. Construction never contacts a remote service; connection
problems surface on first use.
"""

import logging

from .adapters.base import Embedder, FactExtractor, VectorIndex
from .adapters.memory_index import InMemoryVectorIndex
from .config import EmbedderSettings, MemoryConfig, VectorStoreSettings

logger = logging.getLogger(__name__)


def create_embedder(settings: EmbedderSettings) -> Embedder:
    from .adapters.embeddings import SentenceTransformerEmbedder

    logger.info(f"Creating sentence-transformers embedder: {settings.model_name}")
    return SentenceTransformerEmbedder(
        model_name=settings.model_name,
        device=settings.device,
        dimensions=settings.dimensions,
    )


def create_fact_extractor(config: MemoryConfig) -> FactExtractor:
    from .adapters.llm_extractor import AnthropicFactExtractor

    llm = config.llm
    api_key = llm.api_key.get_secret_value() if llm.api_key else None
    if not api_key:
        logger.warning("No LLM API key configured; requests will only succeed through a key-injecting proxy")

    return AnthropicFactExtractor(
        api_key=api_key,
        base_url=llm.base_url,
        model=llm.model,
        max_tokens=llm.max_tokens,
        temperature=llm.temperature,
        timeout=llm.timeout,
        custom_fact_extraction_prompt=config.custom_fact_extraction_prompt,
        custom_update_memory_prompt=config.custom_update_memory_prompt,
    )


def create_vector_index(settings: VectorStoreSettings, dimensions: int | None = None) -> VectorIndex:
    """
    Create the configured vector index (not yet initialized).

    Args:
        settings: Vector store section of the configuration
        dimensions: Embedding size, if known before the first write
    """
    if settings.provider == "memory":
        logger.info("Creating in-memory vector index")
        return InMemoryVectorIndex(distance_metric=settings.distance_metric, dimensions=dimensions)

    from .adapters.qdrant_index import QdrantVectorIndex

    # Determine mode: server (URL) or embedded (path)
    if settings.url:
        logger.info(f"Creating Qdrant index in server mode: {settings.url}")
    else:
        logger.info(f"Creating Qdrant index in embedded mode: {settings.storage_path or ':memory:'}")

    return QdrantVectorIndex(
        collection_name=settings.collection_name,
        distance_metric=settings.distance_metric,
        url=settings.url,
        api_key=settings.api_key.get_secret_value() if settings.api_key else None,
        storage_path=settings.storage_path,
        vector_size=dimensions,
        hnsw_m=settings.hnsw_m,
        hnsw_ef_construct=settings.hnsw_ef_construct,
        on_disk_payload=settings.on_disk_payload,
    )
