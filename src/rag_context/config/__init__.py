"""Configuration for RAG Context.

Settings are read from `RAG_CONTEXT_*` environment variables (and `.env`)
once per process. Tests swap them with `set_settings`/`reset_settings`.
"""

from rag_context.config.settings import Settings

_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, loaded from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Replace the process-wide settings.

    Args:
        settings: Settings used by subsequent `get_settings` calls
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings
    _settings = None


__all__ = ["Settings", "get_settings", "reset_settings", "set_settings"]
