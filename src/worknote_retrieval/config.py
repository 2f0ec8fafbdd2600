"""Configuration management using pydantic-settings."""

import warnings
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DatabaseSettings(BaseSettings):
    """Relational document store configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", case_sensitive=False)

    url: str = Field(
        default="sqlite+aiosqlite:///./worknotes.db",
        description="Database connection URL. Env var: DATABASE_URL",
    )
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Maximum pool overflow")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=3600, description="Pool recycle time in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries (for debugging)")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("Database URL must be a postgresql:// or sqlite:// URL")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class EmbeddingSettings(BaseSettings):
    """Embedding backend configuration (OpenAI embeddings API)."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for embeddings. Env var: OPENAI_API_KEY",
    )
    openai_base_url: Optional[str] = Field(
        default=None,
        description="Optional OpenAI base URL (e.g. an AI gateway). Env var: OPENAI_BASE_URL",
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model name. Env var: EMBEDDING_MODEL",
    )
    embedding_dimension: Optional[int] = Field(
        default=1536,
        description="Expected embedding dimension (used for validation / collection sizing). Env var: EMBEDDING_DIMENSION",
    )
    embedding_batch_size: int = Field(
        default=100,
        description="Maximum inputs per embedding call. Env var: EMBEDDING_BATCH_SIZE",
    )
    embedding_timeout: float = Field(
        default=30.0,
        description="Embedding request timeout in seconds. Env var: EMBEDDING_TIMEOUT",
    )
    embedding_max_retries: int = Field(
        default=3,
        description="Max attempts per embedding batch on transient errors. Env var: EMBEDDING_MAX_RETRIES",
    )

    @field_validator("embedding_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("EMBEDDING_BATCH_SIZE must be > 0")
        return v

    @property
    def is_configured(self) -> bool:
        """Check if the embedding backend has credentials."""
        return bool(self.openai_api_key)


class QdrantSettings(BaseSettings):
    """Qdrant vector index configuration."""

    model_config = SettingsConfigDict(env_prefix="QDRANT_", case_sensitive=False)

    url: str = Field(default="http://localhost:6333", description="Qdrant connection URL")
    api_key: Optional[str] = Field(
        default=None, description="Qdrant API key (for Qdrant Cloud). Env var: QDRANT_API_KEY"
    )
    timeout: int = Field(default=30, description="Request timeout in seconds")
    collection_name: str = Field(
        default="work_note_chunks",
        description="Collection holding work note chunk vectors. Env var: QDRANT_COLLECTION_NAME",
    )

    @property
    def is_cloud(self) -> bool:
        """Check if using Qdrant Cloud (has API key)."""
        return bool(self.api_key)

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.collection_name)


class ChunkingSettings(BaseSettings):
    """Text chunking configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    chunk_size: int = Field(
        default=512, description="Chunk size in approximate tokens. Env var: CHUNK_SIZE"
    )
    chunk_overlap_ratio: float = Field(
        default=0.2,
        description="Fraction of each chunk shared with the next one. Env var: CHUNK_OVERLAP_RATIO",
    )

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("CHUNK_SIZE must be > 0")
        return v

    @field_validator("chunk_overlap_ratio")
    @classmethod
    def validate_overlap_ratio(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("CHUNK_OVERLAP_RATIO must be in [0, 1)")
        return v


class PipelineSettings(BaseSettings):
    """Embedding pipeline tuning."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_PIPELINE_", case_sensitive=False)

    max_chunks_per_batch: int = Field(
        default=100,
        description="Chunks accumulated across notes before one embedding call in embed-pending",
    )
    delete_batch_size: int = Field(
        default=100, description="Chunk ids per vector delete call"
    )
    version_history_limit: int = Field(
        default=5, description="Prior versions inspected when bounding stale chunk cleanup"
    )
    authoritative_cleanup: bool = Field(
        default=True,
        description="Also enumerate stored chunk ids in the vector index when bounding cleanup",
    )


class RetrySettings(BaseSettings):
    """Embedding retry queue configuration."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", case_sensitive=False)

    max_attempts: int = Field(
        default=3, description="Attempts before an item is dead-lettered. Env var: RETRY_MAX_ATTEMPTS"
    )
    backoff_base: float = Field(
        default=2.0,
        description="Exponential backoff base in seconds. Env var: RETRY_BACKOFF_BASE",
    )


class SearchSettings(BaseSettings):
    """Hybrid search configuration."""

    model_config = SettingsConfigDict(env_prefix="SEARCH_", case_sensitive=False)

    rrf_k: int = Field(default=60, description="Reciprocal rank fusion constant")
    default_limit: int = Field(default=10, description="Results returned when no limit is given")
    overfetch_factor: int = Field(
        default=2, description="Each sub-search fetches limit * factor candidates"
    )


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    host: str = Field(default="0.0.0.0", description="Server host. Env var: HOST")
    port: int = Field(default=8004, description="HTTP server port. Env var: PORT")
    reload: bool = Field(
        default=False, description="Enable auto-reload (development only). Env var: RELOAD"
    )


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="worknote-retrieval", description="Application name. Env var: APP_NAME"
    )
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment. Env var: ENVIRONMENT",
    )
    debug: bool = Field(default=False, description="Enable debug mode. Env var: DEBUG")
    log_level: str = Field(default="INFO", description="Logging level. Env var: LOG_LEVEL")

    database: Optional[DatabaseSettings] = None
    embedding: Optional[EmbeddingSettings] = None
    qdrant: Optional[QdrantSettings] = None
    chunking: Optional[ChunkingSettings] = None
    pipeline: Optional[PipelineSettings] = None
    retry: Optional[RetrySettings] = None
    search: Optional[SearchSettings] = None
    server: Optional[ServerSettings] = None

    @model_validator(mode="after")
    def initialize_nested_settings(self) -> "Settings":
        """Sections left unset are built from their own env prefixes."""
        for name, section in _SECTIONS.items():
            if getattr(self, name) is None:
                setattr(self, name, section())
        return self

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        # Unknown names run as development rather than failing startup
        if not isinstance(v, str):
            return v
        try:
            return Environment(v.lower())
        except ValueError:
            return Environment.DEVELOPMENT

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def missing_services(self) -> List[str]:
        """Names of external backends without usable connection settings."""
        missing = []
        if not self.embedding.is_configured:
            missing.append("embeddings (OPENAI_API_KEY)")
        if not self.qdrant.is_configured:
            missing.append("qdrant (QDRANT_URL, QDRANT_COLLECTION_NAME)")
        return missing

    def validate_configuration(self) -> None:
        """Warn about missing external service bindings."""
        for service in self.missing_services():
            warnings.warn(f"Not configured: {service}", UserWarning)

    def validate_production_settings(self) -> None:
        """Raise ``ValueError`` when a production deployment is incomplete."""
        if not self.is_production:
            return
        problems = [f"{service} must be configured" for service in self.missing_services()]
        if self.debug:
            problems.append("DEBUG must be False")
        if self.database.is_sqlite:
            problems.append("DATABASE_URL must point at PostgreSQL")
        if problems:
            raise ValueError("Invalid production configuration: " + "; ".join(problems))


_SECTIONS = {
    "database": DatabaseSettings,
    "embedding": EmbeddingSettings,
    "qdrant": QdrantSettings,
    "chunking": ChunkingSettings,
    "pipeline": PipelineSettings,
    "retry": RetrySettings,
    "search": SearchSettings,
    "server": ServerSettings,
}

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded and checked on first use."""
    global _settings
    if _settings is None:
        settings = Settings()
        settings.validate_configuration()
        settings.validate_production_settings()
        _settings = settings
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (tests, reloads)."""
    global _settings
    _settings = None
