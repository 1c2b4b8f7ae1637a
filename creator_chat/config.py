from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    youtube_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Providers
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 600
    llm_temperature: float = 0.2
    embedding_timeout_seconds: float = 15.0
    completion_timeout_seconds: float = 60.0
    youtube_timeout_seconds: float = 20.0

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    show_debug_in_response: bool = False
    disconnect_poll_seconds: float = 0.5

    # Concurrency substrate
    ingest_lock_ttl_seconds: int = 600
    idempotency_ttl_seconds: int = 86400
    substrate_max_keys: int = 100_000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
