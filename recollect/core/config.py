"""
Recollect Configuration
-----------------------
Centralized configuration for the memory store, the retrieval pipeline
and the two external service adapters (embedding and completion).
Loads from environment variables and YAML config files.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from recollect.core.types import SearchStrategy
from recollect.platform import get_data_dir

logger = logging.getLogger("Recollect.Config")

DEFAULT_DATA_DIR = str(get_data_dir())
DEFAULT_OLLAMA_URL = "http://localhost:11434"
SUPPORTED_EXPANSION_CONTEXTS = ("technical", "general", "pattern", "decision")


def _parse_positive_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive float. Using %s.",
            name,
            raw,
            default,
        )
        return default


def _parse_int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected integer >= %d. Using %s.",
            name,
            raw,
            minimum,
            default,
        )
        return default


def _parse_unit_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
        if not 0.0 <= value <= 1.0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected float in [0, 1]. Using %s.",
            name,
            raw,
            default,
        )
        return default


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_strategy(raw: Optional[str]) -> SearchStrategy:
    if not raw:
        return SearchStrategy.HYBRID
    try:
        return SearchStrategy(raw.strip().lower())
    except ValueError:
        logger.warning("Unknown search strategy '%s'; using hybrid.", raw)
        return SearchStrategy.HYBRID


class EmbeddingConfig(BaseModel):
    """Embedding service configuration."""
    enabled: bool = True
    provider: str = "ollama"
    model: str = "nomic-embed-text"
    dimensions: int = 768
    ollama_url: str = DEFAULT_OLLAMA_URL
    timeout_seconds: float = 30.0


class CompletionConfig(BaseModel):
    """Completion service configuration (used by query expansion)."""
    enabled: bool = True
    provider: str = "ollama"
    model: str = "llama3.1:latest"
    ollama_url: str = DEFAULT_OLLAMA_URL
    timeout_seconds: float = 30.0


class MetadataConfig(BaseModel):
    """SQLite memory store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "memories.db")


class SearchConfig(BaseModel):
    """Retrieval pipeline defaults."""
    default_strategy: SearchStrategy = SearchStrategy.HYBRID
    default_limit: int = 20
    min_similarity: float = 0.3
    rrf_k: int = 60
    vector_weight: float = 0.5
    bm25_weight: float = 0.5
    # Each source is asked for max(limit * 2, min_candidates) results before fusion.
    min_candidates: int = 40
    vector_timeout_seconds: float = 30.0
    expansion_count: int = 5
    expansion_context: str = "general"
    per_query_limit: int = 10
    log_retrievals: bool = True


class AssociationConfig(BaseModel):
    default_strength: float = 0.7


class RecollectConfig(BaseModel):
    """Root configuration for the whole memory layer."""
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    associations: AssociationConfig = Field(default_factory=AssociationConfig)
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> "RecollectConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - RECOLLECT_DATA_DIR: Base data directory
        - RECOLLECT_DB_PATH: SQLite database file
        - RECOLLECT_OLLAMA_URL: Ollama server URL (both services)
        - RECOLLECT_EMBEDDING_ENABLED / RECOLLECT_EMBEDDING_MODEL / RECOLLECT_EMBEDDING_DIMS
        - RECOLLECT_EMBEDDING_TIMEOUT: Seconds per embedding call
        - RECOLLECT_COMPLETION_ENABLED / RECOLLECT_COMPLETION_MODEL
        - RECOLLECT_COMPLETION_TIMEOUT: Seconds per completion call
        - RECOLLECT_SEARCH_STRATEGY: lexical | vector | hybrid | expanded
        - RECOLLECT_MIN_SIMILARITY: Vector search threshold
        - RECOLLECT_LOG_RETRIEVALS: Record each search hit in the retrieval log
        """
        data_dir = os.environ.get("RECOLLECT_DATA_DIR", DEFAULT_DATA_DIR)
        ollama_url = os.environ.get("RECOLLECT_OLLAMA_URL", DEFAULT_OLLAMA_URL)

        expansion_context = os.environ.get("RECOLLECT_EXPANSION_CONTEXT", "general").strip().lower()
        if expansion_context not in SUPPORTED_EXPANSION_CONTEXTS:
            logger.warning(
                "Unknown expansion context '%s'; expected one of %s. Using general.",
                expansion_context,
                SUPPORTED_EXPANSION_CONTEXTS,
            )
            expansion_context = "general"

        return cls(
            data_dir=data_dir,
            embedding=EmbeddingConfig(
                enabled=_parse_bool_env("RECOLLECT_EMBEDDING_ENABLED", True),
                model=os.environ.get("RECOLLECT_EMBEDDING_MODEL", "nomic-embed-text"),
                dimensions=_parse_int_env("RECOLLECT_EMBEDDING_DIMS", 768),
                ollama_url=ollama_url,
                timeout_seconds=_parse_positive_float_env("RECOLLECT_EMBEDDING_TIMEOUT", 30.0),
            ),
            completion=CompletionConfig(
                enabled=_parse_bool_env("RECOLLECT_COMPLETION_ENABLED", True),
                model=os.environ.get("RECOLLECT_COMPLETION_MODEL", "llama3.1:latest"),
                ollama_url=ollama_url,
                timeout_seconds=_parse_positive_float_env("RECOLLECT_COMPLETION_TIMEOUT", 30.0),
            ),
            metadata=MetadataConfig(
                path=os.environ.get("RECOLLECT_DB_PATH", os.path.join(data_dir, "memories.db")),
            ),
            search=SearchConfig(
                default_strategy=_parse_strategy(os.environ.get("RECOLLECT_SEARCH_STRATEGY")),
                min_similarity=_parse_unit_float_env("RECOLLECT_MIN_SIMILARITY", 0.3),
                vector_timeout_seconds=_parse_positive_float_env("RECOLLECT_VECTOR_TIMEOUT", 30.0),
                expansion_context=expansion_context,
                log_retrievals=_parse_bool_env("RECOLLECT_LOG_RETRIEVALS", True),
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "RecollectConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using environment defaults", path)
            return cls.from_env()
        return cls(**data)

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.metadata.path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Data directory: %s", self.data_dir)
