"""
Huginn Configuration
--------------------
Centralized configuration management for all Huginn components.
Loads from environment variables and YAML config files.

Every threshold used by the chunker, gateway, search engine and pattern
builder lives here and is injected; nothing downstream hard-codes them.
Logic errors (e.g. max < min content length) are rejected at construction.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import yaml
from pydantic import BaseModel, Field, model_validator

from huginn.core.types import RepositoryProfile

logger = logging.getLogger("Huginn.Config")

DEFAULT_DATA_DIR = os.path.join(str(Path.home()), ".huginn")
SUPPORTED_CACHE_POLICIES = ("lru", "lfu", "fifo")
SUPPORTED_EMBEDDING_PROVIDERS = ("openai", "ollama")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; expected integer. Using %d.", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; expected float. Using %s.", name, raw, default)
        return default


class ChunkingConfig(BaseModel):
    """Chunk boundary and near-duplicate merge configuration."""
    strategy: str = "smart"
    min_content_length: int = 50
    max_content_length: int = 10000
    todo_completion_trigger: bool = True
    file_change_threshold: int = 3
    time_threshold_minutes: float = 10.0
    similarity_threshold: float = 0.8
    feature_dims: int = 256

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        if self.min_content_length <= 0:
            raise ValueError("min content length must be positive")
        if self.max_content_length <= self.min_content_length:
            raise ValueError("max content length must be greater than min content length")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity threshold must be between 0 and 1")
        if self.file_change_threshold < 1:
            raise ValueError("file change threshold must be at least 1")
        if self.time_threshold_minutes <= 0:
            raise ValueError("time threshold must be positive")
        if self.feature_dims < 8:
            raise ValueError("feature dims must be at least 8")
        return self


class SearchConfig(BaseModel):
    """Progressive search and repository fallback configuration."""
    default_min_relevance: float = 0.5
    relaxed_min_relevance: float = 0.3
    broadest_min_relevance: float = 0.2
    enable_progressive_search: bool = True
    enable_repository_fallback: bool = True
    max_related_repos: int = 3
    repository_similarity_threshold: float = 0.5
    request_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _check_thresholds(self) -> "SearchConfig":
        for name in ("default_min_relevance", "relaxed_min_relevance", "broadest_min_relevance",
                     "repository_similarity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if not self.default_min_relevance > self.relaxed_min_relevance > self.broadest_min_relevance:
            raise ValueError(
                "relevance thresholds must strictly decrease: default > relaxed > broadest"
            )
        if self.max_related_repos < 0:
            raise ValueError("max related repos cannot be negative")
        return self


class CacheTierConfig(BaseModel):
    """One independently configured cache tier."""
    enabled: bool = True
    policy: str = "lru"
    size: int = 1000
    ttl_seconds: float = 3600.0

    @model_validator(mode="after")
    def _check_tier(self) -> "CacheTierConfig":
        self.policy = self.policy.lower()
        if self.policy not in SUPPORTED_CACHE_POLICIES:
            raise ValueError(f"cache policy must be one of {SUPPORTED_CACHE_POLICIES}, got '{self.policy}'")
        if self.size < 0:
            raise ValueError("cache size cannot be negative")
        if self.ttl_seconds <= 0:
            raise ValueError("cache ttl must be positive")
        return self


class CachingConfig(BaseModel):
    """Tier layout: recent chunks (LRU), search answers (LFU), query vectors (FIFO).

    `features` holds the chunker's merge-candidate feature vectors, apart from
    the stored chunks in `memory`.
    """
    memory: CacheTierConfig = Field(
        default_factory=lambda: CacheTierConfig(policy="lru", size=1000, ttl_seconds=3600.0)
    )
    query: CacheTierConfig = Field(
        default_factory=lambda: CacheTierConfig(policy="lfu", size=500, ttl_seconds=1800.0)
    )
    vector: CacheTierConfig = Field(
        default_factory=lambda: CacheTierConfig(policy="fifo", size=100, ttl_seconds=900.0)
    )
    features: CacheTierConfig = Field(
        default_factory=lambda: CacheTierConfig(policy="lru", size=256, ttl_seconds=3600.0)
    )


class EmbeddingConfig(BaseModel):
    """Embedding provider, rate limit and retry configuration."""
    provider: str = "openai"
    model: str = "text-embedding-ada-002"
    dimensions: int = 1536
    base_url: str = "https://api.openai.com"
    api_key: Optional[str] = Field(default=None, exclude=True, repr=False)
    request_timeout_seconds: float = 60.0
    rate_limit_rpm: int = 60
    burst_size: int = 10
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    store_timeout_seconds: float = 120.0

    @model_validator(mode="after")
    def _check_limits(self) -> "EmbeddingConfig":
        if self.provider not in SUPPORTED_EMBEDDING_PROVIDERS:
            raise ValueError(
                f"embedding provider must be one of {SUPPORTED_EMBEDDING_PROVIDERS}, got '{self.provider}'"
            )
        if self.dimensions <= 0:
            raise ValueError("embedding dimensions must be positive")
        if self.rate_limit_rpm <= 0:
            raise ValueError("rate limit rpm must be positive")
        if self.burst_size < 1:
            raise ValueError("burst size must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry attempts must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry delays must satisfy 0 <= base <= max")
        return self


class VectorConfig(BaseModel):
    """Qdrant vector store configuration. `url` wins over the embedded `path`."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "qdrant")
    url: Optional[str] = None
    api_key: Optional[str] = Field(default=None, exclude=True, repr=False)
    collection: str = "huginn_chunks"
    dimensions: int = 1536
    retry_attempts: int = 3


class MetadataConfig(BaseModel):
    """SQLite metadata store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "metadata.db")


class GraphConfig(BaseModel):
    """Kuzu graph store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "kuzu")


class PatternConfig(BaseModel):
    """Pattern recognition configuration."""
    enabled: bool = True
    min_pattern_frequency: int = 3
    max_patterns: int = 10000
    sample_size: int = 20

    @model_validator(mode="after")
    def _check_caps(self) -> "PatternConfig":
        if self.min_pattern_frequency < 1:
            raise ValueError("min pattern frequency must be at least 1")
        if self.max_patterns < 1 or self.sample_size < 1:
            raise ValueError("pattern caps must be at least 1")
        return self


class KnowledgeGraphConfig(BaseModel):
    """Knowledge graph caps and weight dynamics."""
    enabled: bool = True
    max_entities: int = 50000
    max_relationships: int = 100000
    relationship_decay: float = 0.8
    relationship_threshold: float = 0.7
    max_entities_per_chunk: int = 12

    @model_validator(mode="after")
    def _check_caps(self) -> "KnowledgeGraphConfig":
        if self.max_entities < 1 or self.max_relationships < 1 or self.max_entities_per_chunk < 1:
            raise ValueError("knowledge graph caps must be at least 1")
        if not 0.0 < self.relationship_decay < 1.0:
            raise ValueError("relationship decay must be in (0, 1)")
        if not 0.0 <= self.relationship_threshold <= 1.0:
            raise ValueError("relationship threshold must be between 0 and 1")
        return self


class RetentionConfig(BaseModel):
    """Chunk retention policy."""
    enabled: bool = True
    retention_days: float = 90.0
    cleanup_interval_hours: float = 1.0
    cleanup_batch_size: int = 1000

    @model_validator(mode="after")
    def _check_retention(self) -> "RetentionConfig":
        if self.retention_days <= 0:
            raise ValueError("retention days must be positive")
        return self


class PerformanceConfig(BaseModel):
    """Worker pool and background loop cadence."""
    worker_pool_size: int = 4
    sweep_interval_seconds: float = 30.0
    shutdown_drain_seconds: float = 30.0
    notification_batch_size: int = 100
    builder_poll_seconds: float = 5.0


class LoggingConfig(BaseModel):
    level: str = "info"
    file: Optional[str] = None


class HuginnConfig(BaseModel):
    """Root configuration for the entire Huginn system."""
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    caching: CachingConfig = Field(default_factory=CachingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector: VectorConfig = Field(default_factory=VectorConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    patterns: PatternConfig = Field(default_factory=PatternConfig)
    knowledge_graph: KnowledgeGraphConfig = Field(default_factory=KnowledgeGraphConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    repositories: Dict[str, RepositoryProfile] = Field(default_factory=dict)
    data_dir: str = DEFAULT_DATA_DIR

    @model_validator(mode="after")
    def _check_cross_section(self) -> "HuginnConfig":
        if self.vector.dimensions != self.embedding.dimensions:
            raise ValueError(
                f"vector dimensions ({self.vector.dimensions}) must match "
                f"embedding dimensions ({self.embedding.dimensions})"
            )
        for repository, profile in self.repositories.items():
            if not profile.repository:
                profile.repository = repository
            for related, score in profile.related.items():
                if not 0.0 <= score <= 1.0:
                    raise ValueError(
                        f"similarity of '{repository}' to '{related}' must be between 0 and 1"
                    )
        return self

    def get_repository_profile(self, repository: str) -> RepositoryProfile:
        """Return the configured profile or the default one for unknown repositories."""
        profile = self.repositories.get(repository)
        if profile is not None:
            return profile
        return RepositoryProfile(repository=repository)

    @classmethod
    def from_env(cls) -> "HuginnConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - HUGINN_DATA_DIR: Base data directory
        - HUGINN_EMBEDDING_PROVIDER / _MODEL / _DIMS / _URL: Embedding provider
        - OPENAI_API_KEY or HUGINN_EMBEDDING_API_KEY: Provider credential
        - HUGINN_RATE_LIMIT_RPM / HUGINN_RATE_LIMIT_BURST: Provider quota
        - HUGINN_QDRANT_URL / HUGINN_QDRANT_COLLECTION: Vector store
        - HUGINN_CHUNKING_*: Chunk boundaries
        - HUGINN_SEARCH_*: Progressive search thresholds
        - HUGINN_LOG_LEVEL / HUGINN_LOG_FILE: Logging
        """
        data_dir = os.environ.get("HUGINN_DATA_DIR", DEFAULT_DATA_DIR)
        dims = _env_int("HUGINN_EMBEDDING_DIMS", 1536)

        return cls(
            data_dir=data_dir,
            chunking=ChunkingConfig(
                strategy=os.environ.get("HUGINN_CHUNKING_STRATEGY", "smart"),
                min_content_length=_env_int("HUGINN_CHUNKING_MIN_LENGTH", 50),
                max_content_length=_env_int("HUGINN_CHUNKING_MAX_LENGTH", 10000),
                todo_completion_trigger=_env_bool("HUGINN_CHUNKING_TODO_TRIGGER", True),
                file_change_threshold=_env_int("HUGINN_CHUNKING_FILE_THRESHOLD", 3),
                time_threshold_minutes=_env_float("HUGINN_CHUNKING_TIME_THRESHOLD_MINUTES", 10.0),
                similarity_threshold=_env_float("HUGINN_CHUNKING_SIMILARITY_THRESHOLD", 0.8),
            ),
            search=SearchConfig(
                default_min_relevance=_env_float("HUGINN_SEARCH_DEFAULT_MIN_RELEVANCE", 0.5),
                relaxed_min_relevance=_env_float("HUGINN_SEARCH_RELAXED_MIN_RELEVANCE", 0.3),
                broadest_min_relevance=_env_float("HUGINN_SEARCH_BROADEST_MIN_RELEVANCE", 0.2),
                enable_progressive_search=_env_bool("HUGINN_SEARCH_PROGRESSIVE", True),
                enable_repository_fallback=_env_bool("HUGINN_SEARCH_REPOSITORY_FALLBACK", True),
                max_related_repos=_env_int("HUGINN_SEARCH_MAX_RELATED_REPOS", 3),
                repository_similarity_threshold=_env_float(
                    "HUGINN_SEARCH_REPOSITORY_SIMILARITY", 0.5
                ),
            ),
            embedding=EmbeddingConfig(
                provider=os.environ.get("HUGINN_EMBEDDING_PROVIDER", "openai"),
                model=os.environ.get("HUGINN_EMBEDDING_MODEL", "text-embedding-ada-002"),
                dimensions=dims,
                base_url=os.environ.get("HUGINN_EMBEDDING_URL", "https://api.openai.com"),
                api_key=os.environ.get("HUGINN_EMBEDDING_API_KEY") or os.environ.get("OPENAI_API_KEY"),
                request_timeout_seconds=_env_float("HUGINN_EMBEDDING_TIMEOUT_SECONDS", 60.0),
                rate_limit_rpm=_env_int("HUGINN_RATE_LIMIT_RPM", 60),
                burst_size=_env_int("HUGINN_RATE_LIMIT_BURST", 10),
                retry_attempts=_env_int("HUGINN_EMBEDDING_RETRY_ATTEMPTS", 3),
            ),
            vector=VectorConfig(
                path=os.path.join(data_dir, "qdrant"),
                url=os.environ.get("HUGINN_QDRANT_URL") or None,
                api_key=os.environ.get("HUGINN_QDRANT_API_KEY") or None,
                collection=os.environ.get("HUGINN_QDRANT_COLLECTION", "huginn_chunks"),
                dimensions=dims,
                retry_attempts=_env_int("HUGINN_QDRANT_RETRY_ATTEMPTS", 3),
            ),
            metadata=MetadataConfig(path=os.path.join(data_dir, "metadata.db")),
            graph=GraphConfig(path=os.path.join(data_dir, "kuzu")),
            retention=RetentionConfig(
                enabled=_env_bool("HUGINN_RETENTION_ENABLED", True),
                retention_days=_env_float("HUGINN_RETENTION_DAYS", 90.0),
            ),
            logging=LoggingConfig(
                level=os.environ.get("HUGINN_LOG_LEVEL", "info"),
                file=os.environ.get("HUGINN_LOG_FILE") or None,
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "HuginnConfig":
        """Load configuration from a YAML file with the same shape as the model."""
        with open(path, "r") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
        embedding = data.setdefault("embedding", {})
        if not embedding.get("api_key"):
            embedding["api_key"] = os.environ.get("OPENAI_API_KEY")
        return cls(**data)

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.vector.path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.graph.path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.metadata.path).parent.mkdir(parents=True, exist_ok=True)
