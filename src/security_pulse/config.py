"""Configuration helpers for the security pulse service."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    summary_model: str = Field(
        "gpt-4.1-mini", description="Model for per-article summaries (summary/eli5/...)."
    )
    content_model: str = Field(
        "gpt-4.1-mini", description="Model for multi-article content generation."
    )
    prompt_model: str = Field(
        "gpt-4.1-mini", description="Model behind the prompt-writing helpers."
    )
    max_tokens: int = Field(
        1200,
        description="Max output tokens per generation; 0 removes the cap.",
    )
    temperature: float = Field(0.3, description="Generation temperature.")
    feed_user_agent: str = Field(
        "ASTRA-Security-Pulse/1.0",
        description="User-Agent header sent with every feed request.",
    )
    fetch_timeout_s: float = Field(
        10.0, description="Per-feed HTTP timeout in seconds."
    )
    feed_cache_ttl_s: float = Field(
        300.0,
        description="Lifetime of cached feed bodies; 0 disables the cache.",
    )
    max_news_items: int = Field(50, description="Upper bound on aggregated items.")
    description_max_chars: int = Field(
        200, description="Character budget for parsed item descriptions."
    )
    data_dir: str | None = Field(
        None,
        alias="PULSE_DATA_DIR",
        description="Optional override for the storage root; defaults to data/.",
    )
    log_level: str = Field("INFO", alias="PULSE_LOG_LEVEL")
    log_json: bool = Field(
        False, alias="PULSE_LOG_JSON", description="Render logs as JSON lines."
    )
    seed_default_sources: bool = Field(
        True,
        description="Seed the default feed list when no source collection exists yet.",
    )


def get_settings() -> Settings:
    """Return settings instance."""
    return Settings()
