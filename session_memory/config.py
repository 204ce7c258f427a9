from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""  # optional; without it chunk contexts stay "pending"

    # Storage
    database_path: str = "data/session_memory.db"
    sessions_dir: str = "sessions"
    use_vector_index: bool = True

    # Providers
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    context_model: str = "claude-3-5-haiku-20241022"
    request_timeout_seconds: float = 30.0

    # Context prompt
    context_timezone: str = "UTC"
    user_display_name: str = "User"
    assistant_display_name: str = "Assistant"

    # Chunking / embedding / search tuning
    max_chunk_tokens: int = 500
    max_chunks_per_source: int = 2000
    chunk_overlap_chars: int = 50
    embedding_batch_size: int = 10
    embedding_max_workers: int = 4
    embedding_batch_delay_seconds: float = 0.1
    rrf_k: int = 60
    search_limit: int = 5

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except OSError:
        # If .env is unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]
