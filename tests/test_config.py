"""Tests for recollect.core.config and recollect.platform."""

from pathlib import Path

import pytest

from recollect.core.config import (
    AssociationConfig,
    CompletionConfig,
    EmbeddingConfig,
    MetadataConfig,
    RecollectConfig,
    SearchConfig,
)
from recollect.core.types import SearchStrategy
from recollect.platform import get_data_dir

ENV_VARS = [
    "RECOLLECT_DATA_DIR",
    "RECOLLECT_DB_PATH",
    "RECOLLECT_OLLAMA_URL",
    "RECOLLECT_EMBEDDING_ENABLED",
    "RECOLLECT_EMBEDDING_MODEL",
    "RECOLLECT_EMBEDDING_DIMS",
    "RECOLLECT_EMBEDDING_TIMEOUT",
    "RECOLLECT_COMPLETION_ENABLED",
    "RECOLLECT_COMPLETION_MODEL",
    "RECOLLECT_COMPLETION_TIMEOUT",
    "RECOLLECT_SEARCH_STRATEGY",
    "RECOLLECT_MIN_SIMILARITY",
    "RECOLLECT_VECTOR_TIMEOUT",
    "RECOLLECT_EXPANSION_CONTEXT",
    "RECOLLECT_LOG_RETRIEVALS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_embedding(self):
        cfg = EmbeddingConfig()
        assert cfg.enabled is True
        assert cfg.provider == "ollama"
        assert cfg.model == "nomic-embed-text"
        assert cfg.dimensions == 768
        assert cfg.ollama_url == "http://localhost:11434"

    def test_completion(self):
        cfg = CompletionConfig()
        assert cfg.model == "llama3.1:latest"
        assert cfg.timeout_seconds == 30.0

    def test_search(self):
        cfg = SearchConfig()
        assert cfg.default_strategy == SearchStrategy.HYBRID
        assert cfg.rrf_k == 60
        assert cfg.vector_weight == 0.5
        assert cfg.bm25_weight == 0.5
        assert cfg.min_similarity == 0.3
        assert cfg.min_candidates == 40
        assert cfg.expansion_count == 5
        assert cfg.per_query_limit == 10
        assert cfg.log_retrievals is True

    def test_associations(self):
        assert AssociationConfig().default_strength == 0.7

    def test_from_env_defaults(self):
        config = RecollectConfig.from_env()
        assert config.embedding.model == "nomic-embed-text"
        assert config.search.default_strategy == SearchStrategy.HYBRID
        assert config.metadata.path.endswith("memories.db")


class TestFromEnv:
    def test_data_dir_moves_database(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_DATA_DIR", str(tmp_path))
        config = RecollectConfig.from_env()
        assert config.data_dir == str(tmp_path)
        assert config.metadata.path == str(tmp_path / "memories.db")

    def test_db_path_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_DB_PATH", str(tmp_path / "custom.db"))
        assert RecollectConfig.from_env().metadata.path == str(tmp_path / "custom.db")

    def test_services(self, monkeypatch):
        monkeypatch.setenv("RECOLLECT_OLLAMA_URL", "http://gpu-box:11434")
        monkeypatch.setenv("RECOLLECT_EMBEDDING_MODEL", "mxbai-embed-large")
        monkeypatch.setenv("RECOLLECT_EMBEDDING_DIMS", "1024")
        monkeypatch.setenv("RECOLLECT_COMPLETION_ENABLED", "false")
        monkeypatch.setenv("RECOLLECT_EMBEDDING_TIMEOUT", "12.5")
        config = RecollectConfig.from_env()
        assert config.embedding.ollama_url == "http://gpu-box:11434"
        assert config.completion.ollama_url == "http://gpu-box:11434"
        assert config.embedding.model == "mxbai-embed-large"
        assert config.embedding.dimensions == 1024
        assert config.embedding.timeout_seconds == 12.5
        assert config.completion.enabled is False

    def test_search_settings(self, monkeypatch):
        monkeypatch.setenv("RECOLLECT_SEARCH_STRATEGY", "Lexical")
        monkeypatch.setenv("RECOLLECT_MIN_SIMILARITY", "0.55")
        monkeypatch.setenv("RECOLLECT_EXPANSION_CONTEXT", "technical")
        monkeypatch.setenv("RECOLLECT_LOG_RETRIEVALS", "0")
        config = RecollectConfig.from_env()
        assert config.search.default_strategy == SearchStrategy.LEXICAL
        assert config.search.min_similarity == 0.55
        assert config.search.expansion_context == "technical"
        assert config.search.log_retrievals is False

    @pytest.mark.parametrize(
        "name,value",
        [
            ("RECOLLECT_SEARCH_STRATEGY", "psychic"),
            ("RECOLLECT_EXPANSION_CONTEXT", "astrology"),
            ("RECOLLECT_EMBEDDING_TIMEOUT", "-4"),
            ("RECOLLECT_VECTOR_TIMEOUT", "soon"),
            ("RECOLLECT_EMBEDDING_DIMS", "wide"),
            ("RECOLLECT_EMBEDDING_DIMS", "0"),
            ("RECOLLECT_MIN_SIMILARITY", "high"),
            ("RECOLLECT_MIN_SIMILARITY", "1.5"),
        ],
    )
    def test_invalid_values_fall_back(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        config = RecollectConfig.from_env()
        assert config.search.default_strategy == SearchStrategy.HYBRID
        assert config.search.expansion_context == "general"
        assert config.embedding.timeout_seconds == 30.0
        assert config.search.vector_timeout_seconds == 30.0
        assert config.embedding.dimensions == 768
        assert config.search.min_similarity == 0.3


class TestFromYaml:
    def test_load(self, tmp_path):
        path = tmp_path / "recollect.yaml"
        path.write_text(
            "data_dir: {dir}\n"
            "metadata:\n"
            "  path: {dir}/m.db\n"
            "embedding:\n"
            "  enabled: false\n"
            "search:\n"
            "  default_strategy: expanded\n"
            "  rrf_k: 30\n".format(dir=tmp_path),
            encoding="utf-8",
        )
        config = RecollectConfig.from_yaml(str(path))
        assert config.embedding.enabled is False
        assert config.search.default_strategy == SearchStrategy.EXPANDED
        assert config.search.rrf_k == 30
        assert config.metadata.path == f"{tmp_path}/m.db"
        assert config.completion.enabled is True

    def test_missing_file_uses_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_DATA_DIR", str(tmp_path))
        config = RecollectConfig.from_yaml(str(tmp_path / "absent.yaml"))
        assert config.data_dir == str(tmp_path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert RecollectConfig.from_yaml(str(path)).search.rrf_k == 60


def test_ensure_directories(tmp_path):
    config = RecollectConfig(
        data_dir=str(tmp_path / "data"),
        metadata=MetadataConfig(path=str(tmp_path / "nested" / "db" / "memories.db")),
    )
    config.ensure_directories()
    assert (tmp_path / "data").is_dir()
    assert (tmp_path / "nested" / "db").is_dir()


class TestDataDir:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_DATA_DIR", str(tmp_path / "override"))
        assert get_data_dir() == tmp_path / "override"

    def test_default_is_per_user(self):
        path = get_data_dir()
        assert isinstance(path, Path)
        assert "recollect" in str(path).lower()
