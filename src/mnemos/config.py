"""
mnemos Config -- layered settings: built-in defaults < config.json < environment.

Sections are pydantic models, so range and type checks happen on load; the
environment layer is a pydantic-settings ``BaseSettings`` reading ``MNEMOS_*``.

Usage:
    cfg = load_config()                 # $MNEMOS_HOME/config.json if present
    cfg.retention.keep_threshold        # 0.3
    cfg.readiness.proceed_threshold     # 0.7

Environment:
    MNEMOS_HOME            data directory (default ~/.mnemos)
    MNEMOS_DB_PATH         database file (default $MNEMOS_HOME/mnemos.db)
    MNEMOS_EMBEDDING_DIM   embedding dimension (MRL-truncated when smaller than the model's)
    MNEMOS_SKIP_EMBEDDINGS "1" disables the local model (hash embeddings only)
    MNEMOS_LLM_URL         OpenAI-compatible base URL for the judgment LLM
    MNEMOS_LLM_MODEL       model name sent to the judgment LLM
    MNEMOS_LLM_API_KEY     bearer token for the judgment LLM
    MNEMOS_LLM_TIMEOUT     per-call timeout in seconds
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mnemos.errors import ConfigError

logger = logging.getLogger("mnemos.config")


def mnemos_home() -> Path:
    """Resolve the data directory from MNEMOS_HOME."""
    return Path(os.environ.get("MNEMOS_HOME", str(Path.home() / ".mnemos")))


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SearchConfig(Section):
    memories_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    docs_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    code_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    alpha: float = Field(default=0.5, ge=0.0, le=1.0)
    top_k: int = Field(default=10, ge=1)
    bm25_k1: float = Field(default=1.3, ge=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=5, ge=1)
    brute_force_limit: int = Field(default=10000, ge=1)
    centrality_boost_weight: float = Field(default=0.0, ge=0.0, le=1.0)
    mmr_lambda: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="MMR re-ranking; None disables")


class ReadinessConfig(Section):
    proceed_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    warn_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    expected_results: int = Field(default=5, ge=1)
    freshness_half_life_days: float = Field(default=7.0, gt=0.0)
    freshness_floor: float = Field(default=0.1, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> "ReadinessConfig":
        if self.warn_threshold > self.proceed_threshold:
            raise ValueError("warn_threshold must not exceed proceed_threshold")
        return self


class RetentionConfig(Section):
    decay_rate: float = Field(default=0.01, ge=0.0)
    access_weight: float = Field(default=0.1, ge=0.0)
    max_access_boost: float = Field(default=2.0, ge=0.0)
    keep_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    delete_threshold: float = Field(default=0.15, ge=0.0, le=1.0)
    default_quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    score_quality_on_save: StrictBool = True
    use_temporal_decay: StrictBool = True

    @model_validator(mode="after")
    def _ordered(self) -> "RetentionConfig":
        if self.delete_threshold > self.keep_threshold:
            raise ValueError("delete_threshold must not exceed keep_threshold")
        return self


class GraphConfig(Section):
    auto_link_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    auto_link_max_links: int = Field(default=3, ge=1)
    min_cooccurrence: int = Field(default=2, ge=1)
    max_iterations: int = Field(default=100, ge=1)
    min_community_size: int = Field(default=2, ge=1)
    community_tag_prefix: str = "community"
    centrality_method: Literal["degree", "eigenvector"] = "eigenvector"
    weak_link_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    enrich_batch_size: int = Field(default=20, ge=1)


class SupersessionConfig(Section):
    enabled: StrictBool = True
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    confidence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    max_candidates: int = Field(default=5, ge=1)
    queue_size: int = Field(default=256, ge=1)


class LLMConfig(Section):
    base_url: str = "http://localhost:11434/v1"
    model: str = "qwen2.5:7b"
    api_key: Optional[str] = None
    timeout: float = Field(default=15.0, gt=0.0)
    temperature: float = Field(default=0.1, ge=0.0)
    max_output_tokens: int = Field(default=200, ge=1)


class EmbeddingConfig(Section):
    dimension: int = Field(default=384, gt=0)
    skip_model: StrictBool = False
    cache_size: int = Field(default=512, ge=0)


class IndexingConfig(Section):
    chunk_size: int = Field(default=500, ge=1)
    chunk_overlap: int = Field(default=50, ge=0)
    max_file_bytes: int = Field(default=1_000_000, ge=1)
    code_extensions: Tuple[str, ...] = (
        ".py", ".js", ".ts", ".tsx", ".jsx", ".go", ".rs", ".java", ".kt",
        ".rb", ".c", ".h", ".cpp", ".hpp", ".cs", ".swift", ".php", ".sh",
    )
    doc_extensions: Tuple[str, ...] = (".md", ".mdx", ".rst", ".txt")


class MnemosConfig(Section):
    home: Path = Field(default_factory=mnemos_home)
    db_path: Optional[Path] = None
    search: SearchConfig = Field(default_factory=SearchConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    supersession: SupersessionConfig = Field(default_factory=SupersessionConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)

    @property
    def database(self) -> Path:
        return Path(self.db_path) if self.db_path else self.home / "mnemos.db"

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["db_path"] = str(self.database)
        return data


# ---------------------------------------------------------------------------
# Environment layer
# ---------------------------------------------------------------------------


class EnvSettings(BaseSettings):
    """The ``MNEMOS_*`` variables that override file values."""

    model_config = SettingsConfigDict(env_prefix="MNEMOS_", env_ignore_empty=True, extra="ignore")

    db_path: Optional[Path] = None
    embedding_dim: Optional[int] = None
    skip_embeddings: Optional[bool] = None
    llm_url: Optional[str] = None
    llm_model: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_timeout: Optional[float] = None

    def as_layer(self) -> Dict[str, Any]:
        """Nested dict in config.json shape, holding only variables that are set."""
        layer: Dict[str, Any] = {}

        def put(section: Optional[str], key: str, value: Any) -> None:
            if value is None or value == "":
                return
            if section is None:
                layer[key] = value
            else:
                layer.setdefault(section, {})[key] = value

        put(None, "db_path", self.db_path)
        put("embedding", "dimension", self.embedding_dim)
        if self.skip_embeddings:
            put("embedding", "skip_model", True)
        put("llm", "base_url", self.llm_url)
        put("llm", "model", self.llm_model)
        put("llm", "api_key", self.llm_api_key)
        put("llm", "timeout", self.llm_timeout)
        return layer


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _describe(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or 'config'}: {e['msg']}" for e in error.errors()
    )


def load_config(path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> MnemosConfig:
    """Build the effective configuration.

    ``path`` defaults to ``$MNEMOS_HOME/config.json``; a missing file is not an
    error. ``overrides`` uses the same nested shape as the file and wins over
    both the file and the environment.
    """
    config_path = Path(path) if path else mnemos_home() / "config.json"

    file_values: Dict[str, Any] = {}
    if config_path.exists():
        try:
            file_values = json.loads(config_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(file_values, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")
        logger.debug("Loaded config from %s", config_path)

    try:
        env_layer = EnvSettings().as_layer()
    except ValidationError as e:
        raise ConfigError(f"Invalid MNEMOS_* environment: {_describe(e)}") from e

    merged = _deep_merge(_deep_merge(file_values, env_layer), overrides or {})
    try:
        return MnemosConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_describe(e)}") from e
