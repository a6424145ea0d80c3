"""Delve configuration — loaded from .env via pydantic-settings."""

from pydantic_settings import BaseSettings
from pydantic import Field


class DelveSettings(BaseSettings):
    """All Delve configuration. Reads from .env file and environment variables."""

    # --- Redis (state store, search cache, Shadows) ---
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for run state, search cache and Shadows",
    )
    state_ttl_seconds: int = Field(
        default=60 * 60 * 24,
        description="Expiry of every run record, refreshed on each write",
    )

    # --- Search cache ---
    search_cache_ttl_seconds: int = Field(default=60 * 60 * 24 * 7)
    search_cache_similarity: float = Field(
        default=0.8,
        description="Minimum Jaccard similarity for a cached query to be reused",
    )
    search_cache_max_results: int = Field(default=50)

    # --- Web search (Exa) ---
    exa_api_url: str = Field(default="https://api.exa.ai")
    exa_api_key: str = Field(default="", description="Exa API key (x-api-key header)")

    # --- Model providers (availability is decided by key presence) ---
    openai_api_key: str = Field(default="")
    anthropic_api_key: str = Field(default="")
    google_generative_ai_api_key: str = Field(default="")
    xai_api_key: str = Field(default="")

    openai_model: str = Field(default="gpt-4o")
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022")
    google_model: str = Field(default="gemini-2.5-pro")
    xai_model: str = Field(default="grok-3")

    default_provider: str = Field(default="openai", description="Provider for single runs")

    # --- Budgets ---
    run_timeout_seconds: float = Field(default=3600.0, description="Wall-clock cap per run")
    multi_run_timeout_seconds: float = Field(default=7200.0)
    llm_timeout_seconds: float = Field(default=120.0, description="Per-request HTTP timeout")
    cas_max_retries: int = Field(default=8, description="Optimistic retries on aggregate writes")

    # --- Shadows worker ---
    shadows_name: str = Field(default="delve", description="Shadows namespace (Redis key prefix)")

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Singleton: import this everywhere
settings = DelveSettings()
