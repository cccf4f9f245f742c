from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    gemini_api_key: str = ""  # Only needed when a Gemini provider is selected

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Generative model
    llm_provider: str = "anthropic"  # "anthropic" or "gemini"
    llm_model: str = "claude-sonnet-4-20250514"
    repair_model: str = ""  # falls back to llm_model
    max_output_tokens: int = 16000

    # Retry envelope around every model call
    llm_max_attempts: int = 4
    llm_initial_delay_seconds: float = 2.0
    llm_max_jitter_seconds: float = 1.0

    # Embeddings
    embedding_provider: str = "openai"  # "openai" or "gemini"
    embedding_model: str = "text-embedding-3-small"

    # Chunking / batching policy
    pages_per_chunk: int = 1
    analysis_batch_size: int = 15
    analysis_concurrency: int = 3
    split_batches_on_questioner_change: bool = True
    corpus_top_k: int = 5
    insights_min_entries: int = 3

    # Finished API runs kept in memory for polling; older ones are evicted
    max_retained_runs: int = 100

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def effective_repair_model(self) -> str:
        return self.repair_model or self.llm_model


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
