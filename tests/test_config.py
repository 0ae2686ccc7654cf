"""Tests for configuration management."""

import pytest
from pydantic import ValidationError

from rag_context.config import get_settings, reset_settings, set_settings
from rag_context.config.settings import Settings
from rag_context.services.context_cache import CacheConfig
from rag_context.services.resilience import ResilienceConfig


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self, monkeypatch):
        """Test default configuration values."""
        monkeypatch.delenv("RAG_CONTEXT_OPENAI_API_KEY", raising=False)
        settings = Settings(_env_file=None)

        assert settings.embedding_provider == "local"
        assert settings.llm_provider == "none"
        assert settings.vector_namespace == "production"
        assert settings.token_counting == "estimate"
        assert settings.cache_max_memory_mb == 100.0
        assert settings.cache_default_ttl_seconds == 1800.0
        assert settings.cache_max_entries == 1000
        assert settings.max_retries == 3
        assert settings.circuit_breaker_threshold == 5
        assert settings.failure_policy == "graceful-degradation"
        assert settings.log_level == "INFO"

    def test_env_variable_override(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("RAG_CONTEXT_CACHE_MAX_ENTRIES", "50")
        monkeypatch.setenv("RAG_CONTEXT_FAILURE_POLICY", "fail-fast")
        monkeypatch.setenv("RAG_CONTEXT_EXPANSION_SEED", "42")

        settings = Settings(_env_file=None)

        assert settings.cache_max_entries == 50
        assert settings.failure_policy == "fail-fast"
        assert settings.expansion_seed == 42

    def test_env_prefix(self, monkeypatch):
        """Test that the RAG_CONTEXT_ prefix is required."""
        monkeypatch.setenv("CACHE_MAX_ENTRIES", "7")

        assert Settings(_env_file=None).cache_max_entries == 1000

    def test_openai_requires_api_key(self, monkeypatch):
        """Test an OpenAI provider without key is rejected."""
        monkeypatch.delenv("RAG_CONTEXT_OPENAI_API_KEY", raising=False)

        with pytest.raises(ValidationError, match="API key"):
            Settings(_env_file=None, embedding_provider="openai")
        with pytest.raises(ValidationError, match="API key"):
            Settings(_env_file=None, llm_provider="openai")

        assert Settings(_env_file=None, llm_provider="openai", openai_api_key="k").llm_model

    def test_delay_bounds(self):
        """Test base delay may not exceed the maximum delay."""
        with pytest.raises(ValidationError, match="base_delay_seconds"):
            Settings(_env_file=None, base_delay_seconds=2.0, max_delay_seconds=1.0)

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("cache_max_entries", 0),
            ("cache_hit_rate_target", 1.5),
            ("max_retries", 0),
            ("failure_policy", "ignore"),
            ("token_counting", "exact"),
        ],
    )
    def test_field_validation(self, field: str, value):
        """Test bounds and literals are enforced."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestComponentConfig:
    """Test component configuration built from settings."""

    def test_cache_config_from_settings(self):
        """Test cache settings map onto CacheConfig."""
        settings = Settings(
            _env_file=None,
            cache_max_memory_mb=10,
            cache_default_ttl_seconds=60,
            cache_cleanup_interval_seconds=5,
            cache_max_entries=20,
            cache_hit_rate_target=0.5,
        )

        assert CacheConfig.from_settings(settings) == CacheConfig(10, 60, 5, 20, 0.5)

    def test_resilience_config_from_settings(self, test_settings: Settings):
        """Test resilience settings map onto ResilienceConfig."""
        config = ResilienceConfig.from_settings(test_settings)

        assert config.max_retries == 3
        assert config.base_delay == 0.001
        assert config.max_delay == 0.002
        assert config.operation_timeout == 1.0
        assert config.circuit_breaker_threshold == 5


class TestGlobalSettings:
    """Test the lazily loaded settings singleton."""

    def test_set_get_reset(self, test_settings: Settings):
        """Test the singleton can be overridden and reset."""
        try:
            set_settings(test_settings)
            assert get_settings() is test_settings

            reset_settings()
            assert get_settings() is not test_settings
        finally:
            reset_settings()
