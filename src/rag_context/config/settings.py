"""Application settings management using Pydantic Settings."""

from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings.

    All settings can be configured via environment variables with the
    prefix `RAG_CONTEXT_`. For example, `RAG_CONTEXT_CACHE_MAX_ENTRIES`.
    """

    # Embedding
    embedding_provider: Literal["local", "openai"] = Field(
        default="local", description="Embedding provider to use"
    )
    embedding_model: str = Field(
        default="intfloat/multilingual-e5-small", description="Embedding model name"
    )

    # OpenAI (optional)
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    openai_embedding_model: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )

    # Language model
    llm_provider: Literal["none", "openai"] = Field(
        default="none",
        description="Language model used to turn context into prose (none = return context)",
    )
    llm_model: str = Field(default="gpt-4o-mini", description="Chat completion model")
    llm_temperature: float = Field(
        default=0.3, ge=0.0, le=2.0, description="Sampling temperature"
    )

    # Vector search
    vector_namespace: str = Field(
        default="production", description="Namespace queried in the vector index"
    )
    corpus_path: str | None = Field(
        default=None,
        description="JSON corpus loaded into the in-memory vector index at startup",
    )
    corpus_batch_size: int = Field(
        default=32,
        ge=1,
        le=1000,
        description="Batch size for corpus embedding generation",
    )

    # Token counting
    token_counting: Literal["estimate", "tiktoken"] = Field(
        default="estimate",
        description="Token counting mode (estimate = characters / 4)",
    )
    token_counter_model: str = Field(
        default="gpt-4",
        description="Model name for tiktoken token counting",
    )

    # Context cache
    cache_max_memory_mb: float = Field(
        default=100.0,
        gt=0.0,
        le=4096.0,
        description="Estimated memory budget for cached context in megabytes",
    )
    cache_default_ttl_seconds: float = Field(
        default=1800.0,
        ge=1.0,
        le=86400.0,
        description="Base time-to-live for cache entries in seconds",
    )
    cache_cleanup_interval_seconds: float = Field(
        default=300.0,
        ge=1.0,
        description="Interval of the background expiry sweep in seconds",
    )
    cache_max_entries: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="Maximum number of cache entries",
    )
    cache_hit_rate_target: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Hit rate below which optimize() lengthens TTLs",
    )

    # Conversation memory
    conversation_max_messages: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Turns remembered per conversation",
    )
    conversation_ttl_seconds: float = Field(
        default=3600.0,
        ge=1.0,
        le=604800.0,
        description="Idle time after which a conversation is forgotten",
    )
    conversation_cleanup_interval_seconds: float = Field(
        default=600.0,
        ge=1.0,
        description="Interval of the background conversation sweep in seconds",
    )

    # Resilience
    max_retries: int = Field(
        default=3, ge=1, le=10, description="Attempts per primary operation"
    )
    base_delay_seconds: float = Field(
        default=0.1, ge=0.0, description="Base retry backoff delay in seconds"
    )
    max_delay_seconds: float = Field(
        default=5.0, ge=0.0, description="Upper bound for a single backoff delay"
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Exponential backoff multiplier"
    )
    circuit_breaker_threshold: int = Field(
        default=5, ge=1, description="Failures before a circuit opens"
    )
    circuit_breaker_timeout_seconds: float = Field(
        default=30.0, ge=0.0, description="Cooldown before an open circuit half-opens"
    )
    operation_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Timeout for each primary attempt"
    )
    fallback_timeout_seconds: float = Field(
        default=3.0, gt=0.0, description="Timeout for each fallback attempt"
    )

    # Pipeline
    failure_policy: Literal["graceful-degradation", "fail-fast"] = Field(
        default="graceful-degradation",
        description="How the pipeline reacts to a failed critical stage",
    )
    expansion_seed: int | None = Field(
        default=None,
        description="Seed for query-expansion synonym picks (None = first synonym)",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_prefix="RAG_CONTEXT_", env_file=".env", env_file_encoding="utf-8"
    )

    @model_validator(mode="after")
    def validate_provider_config(self) -> Self:
        """Validate provider-specific configuration."""
        needs_openai = self.embedding_provider == "openai" or self.llm_provider == "openai"
        if needs_openai and not self.openai_api_key:
            raise ValueError(
                "OpenAI API key is required when an OpenAI provider is selected. "
                "Set RAG_CONTEXT_OPENAI_API_KEY environment variable."
            )
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"base_delay_seconds ({self.base_delay_seconds}) "
                f"must be <= max_delay_seconds ({self.max_delay_seconds})"
            )
        return self
