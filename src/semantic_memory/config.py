"""
Configuration for the semantic memory engine.

Each concern is a pydantic-settings section that can be populated from
environment variables (``SEMANTIC_MEMORY_<SECTION>_<FIELD>``). The sections
are composed into ``MemoryConfig``, which is passed explicitly to ``Memory``;
nothing here is read as ambient process state after construction.
"""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DistanceMetric = Literal["Cosine", "Dot", "Euclid"]
ScoreNormalization = Literal["auto", "cosine", "dot", "euclidean", "identity"]


class EmbedderSettings(BaseSettings):
    """Embedding model selection."""

    model_config = SettingsConfigDict(env_prefix="SEMANTIC_MEMORY_EMBEDDER_")

    model_name: str = Field(default="all-MiniLM-L6-v2", min_length=1)
    device: str | None = None
    # Override when the model is not in the known-dimensions table
    dimensions: int | None = Field(default=None, ge=1)


class VectorStoreSettings(BaseSettings):
    """Vector index connection parameters."""

    model_config = SettingsConfigDict(env_prefix="SEMANTIC_MEMORY_QDRANT_")

    provider: Literal["qdrant", "memory"] = "memory"
    url: str | None = None
    api_key: SecretStr | None = None
    storage_path: str | None = None
    collection_name: str = Field(default="memories", min_length=1)
    distance_metric: DistanceMetric = "Cosine"
    hnsw_m: int = Field(default=16, ge=4)
    hnsw_ef_construct: int = Field(default=100, ge=4)
    on_disk_payload: bool = False

    @model_validator(mode="after")
    def check_location(self) -> "VectorStoreSettings":
        if self.url and self.storage_path:
            raise ValueError("Cannot specify both url and storage_path. Choose embedded OR server mode.")
        return self


class LLMSettings(BaseSettings):
    """Fact extraction / merge classification model."""

    model_config = SettingsConfigDict(env_prefix="SEMANTIC_MEMORY_LLM_")

    base_url: str = "https://api.anthropic.com"
    api_key: SecretStr | None = None
    model: str = "claude-3-5-haiku-20241022"
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    timeout: float = Field(default=30.0, gt=0.0)


class SearchSettings(BaseSettings):
    """Query engine defaults."""

    model_config = SettingsConfigDict(env_prefix="SEMANTIC_MEMORY_SEARCH_")

    default_limit: int = Field(default=10, ge=1)
    score_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    # Multiplier applied to k when post-filtering may drop hits
    overfetch_factor: int = Field(default=3, ge=1)
    score_normalization: ScoreNormalization = "auto"


class ReconcileSettings(BaseSettings):
    """Reconciliation engine tuning."""

    model_config = SettingsConfigDict(env_prefix="SEMANTIC_MEMORY_RECONCILE_")

    neighbor_count: int = Field(default=5, ge=1, le=20)
    max_conflict_retries: int = Field(default=2, ge=0)


class MemoryConfig(BaseModel):
    """Top-level engine configuration, validated once at construction."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    embedder: EmbedderSettings = Field(default_factory=EmbedderSettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    custom_fact_extraction_prompt: str | None = Field(default=None, min_length=1)
    custom_update_memory_prompt: str | None = Field(default=None, min_length=1)
    history_db_path: str | None = None
    adapter_timeout: float | None = Field(default=None, gt=0.0)
    version: str = "v1.1"


def load_config(value: Any = None) -> MemoryConfig:
    """Validate a host-supplied configuration value.

    Accepts ``None`` (defaults + environment), an existing ``MemoryConfig``,
    or a mapping of recognised keys.

    Raises:
        ConfigurationError: for any other shape, or when validation fails.
    """
    if value is None:
        value = {}
    if isinstance(value, MemoryConfig):
        return value
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Configuration must be a mapping or MemoryConfig, got {type(value).__name__}"
        )

    try:
        config = MemoryConfig.model_validate(dict(value))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    logger.debug(
        f"Loaded configuration: vector_store={config.vector_store.provider}, embedder={config.embedder.model_name}"
    )
    return config
