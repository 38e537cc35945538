"""Application settings for the AIDA context & retrieval engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from ``AIDA_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AIDA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False
    allowed_origins: str = Field(default="", description="Comma-separated CORS origins outside development")

    # Infrastructure
    redis_url: str | None = None
    redis_namespace: str = "aida"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = Field(default=1536, gt=0)
    embedding_batch_size: int = Field(default=100, gt=0)
    embedding_batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    embedding_memory_capacity: int = Field(default=1000, gt=0)
    embedding_cache_ttl_seconds: int = Field(default=86400, gt=0)
    embedding_max_content_chars: int = 8000

    # Context window
    max_turns: int = Field(default=20, gt=0)
    max_context_tokens: int = Field(default=8000, gt=0)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    context_persistence: bool = True
    context_retention_days: int = 30
    max_cached_windows: int = Field(default=1000, gt=0)

    # Retrieval and fusion
    max_conversation_results: int = 5
    max_document_results: int = 10
    knowledge_similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fusion_window_size: int = Field(default=15, gt=0)
    fusion_algorithm: Literal["weighted", "rrf", "adaptive"] = "weighted"
    analyzer_language: Literal["en", "pt"] = "en"

    # Request handling
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_message_length: int = Field(default=4000, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    llm_max_retries: int = Field(default=3, ge=1)
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    history_turns_in_prompt: int = 10

    # Quality gates
    enable_content_filter: bool = True
    enable_fact_checking: bool = True
    enable_personalization: bool = True

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str | None) -> str | None:
        """Reject URLs without a redis scheme."""
        if v and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
