"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (PB_* prefix)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_ENV_VAR = "PATTERNBANK_CONFIG"
IN_MEMORY_DB = ":memory:"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class StorageConfig(BaseModel):
    """Durable storage configuration."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".patternbank" / "memory.db",
        description="SQLite database file. Use ':memory:' for a throwaway store.",
    )
    default_namespace: str = Field(
        default="default", min_length=1, description="Namespace used when none is given."
    )
    default_confidence: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Confidence assigned when store omits one."
    )
    busy_timeout_ms: int = Field(
        default=5000, ge=0, description="How long SQLite waits on a locked database."
    )
    shutdown_grace_ms: int = Field(
        default=200, gt=0, description="Upper bound on shutdown duration."
    )


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    use_semantic_search: bool = Field(
        default=True, description="Enable semantic search with embeddings."
    )
    model: str = Field(
        default="all-MiniLM-L6-v2", description="Embedding model for semantic memory search."
    )
    server_url: str | None = Field(
        default=None,
        description="Preferred local embedding HTTP endpoint, used before loading local weights.",
    )
    timeout: float = Field(
        default=2.0, gt=0, description="Latency budget for a single embedding call (seconds)."
    )
    cache_ttl: float = Field(default=3600.0, gt=0, description="Embedding cache TTL (seconds).")
    cache_size: int = Field(default=1000, gt=0, description="Maximum cached embeddings.")


class QueryConfig(BaseModel):
    """Query coordinator configuration."""

    semantic_timeout_ms: int = Field(
        default=3000, gt=0, description="Hard deadline for the semantic search branch."
    )
    cache_ttl: float = Field(default=60.0, gt=0, description="Query result cache TTL (seconds).")
    cache_size: int = Field(default=100, gt=0, description="Maximum cached query results.")
    default_limit: int = Field(default=10, gt=0, description="Result limit when none is given.")


class RankingConfig(BaseModel):
    """Semantic ranking weights."""

    alpha: float = Field(default=0.7, ge=0.0, description="Weight of cosine similarity.")
    beta: float = Field(default=0.2, ge=0.0, description="Weight of recency.")
    gamma: float = Field(default=0.1, ge=0.0, description="Weight of confidence.")
    delta: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Diversity trade-off for MMR re-ranking."
    )
    recency_half_life_days: float = Field(
        default=45.0, gt=0, description="Age at which the recency term halves."
    )
    min_confidence: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Semantic candidates below this are skipped."
    )
    min_similarity: float = Field(
        default=0.65,
        ge=0.0,
        le=1.0,
        description="Normalized similarity a semantic candidate needs to be returned.",
    )


class ConsolidationConfig(BaseModel):
    """Consolidation engine configuration."""

    min_uses: int = Field(default=3, ge=1)
    min_success_rate: float = Field(default=0.7, ge=0.0, le=1.0)
    lookback_days: int = Field(default=30, ge=1)
    prune_confidence_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    similarity_threshold: float = Field(
        default=0.85, ge=-1.0, le=1.0, description="Cosine similarity needed to group patterns."
    )
    min_group_size: int = Field(default=2, ge=1)
    interval_seconds: float | None = Field(
        default=None, gt=0, description="Run consolidation periodically when set."
    )


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


def _ensure_parent_directory(path: Path, name: str) -> Path:
    """Ensure parent directory exists for file paths. Raises on failure."""
    expanded = path.expanduser().resolve()
    try:
        expanded.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ValueError(f"Cannot create parent directory for {name} {expanded}: {exc}") from exc
    return expanded


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="PB_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    log_level: str = Field(default="INFO", description="Log level for patternbank output.")

    @field_validator("storage", mode="after")
    @classmethod
    def ensure_storage_directory(cls, v: StorageConfig) -> StorageConfig:
        """Ensure the database parent directory exists."""
        if str(v.db_path) != IN_MEMORY_DB:
            v.db_path = _ensure_parent_directory(v.db_path, "db_path")
        return v

    @model_validator(mode="after")
    def check_ranking_weights(self) -> AppConfig:
        r = self.ranking
        if r.alpha + r.beta + r.gamma <= 0:
            raise ValueError("ranking weights alpha, beta and gamma cannot all be zero")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Ensure environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.home() / ".patternbank.toml")
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    parser = json.loads if suffix == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


_NESTED_MODELS: dict[str, type[BaseModel]] = {
    "storage": StorageConfig,
    "embedding": EmbeddingConfig,
    "query": QueryConfig,
    "ranking": RankingConfig,
    "consolidation": ConsolidationConfig,
}


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like PB_QUERY__SEMANTIC_TIMEOUT_MS.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    for group_name, model_cls in _NESTED_MODELS.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    if f"{prefix}log_level".upper() in env_vars:
        overrides.add("log_level")

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = AppConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = AppConfig()

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result


__all__ = [
    "CONFIG_ENV_VAR",
    "IN_MEMORY_DB",
    "AppConfig",
    "ConfigError",
    "ConfigLoadResult",
    "ConsolidationConfig",
    "EmbeddingConfig",
    "QueryConfig",
    "RankingConfig",
    "StorageConfig",
    "load_config",
]
