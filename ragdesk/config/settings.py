"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# pydantic-settings reads configuration from two sources, in priority
# order:
#
#   1. **Environment variables**: e.g. OPENAI_API_KEY=sk-abc123
#   2. **.env file**: key=value lines in the project root .env file
#
# Field `openai_api_key` maps to env var `OPENAI_API_KEY`.  Defaults below
# apply when neither source sets a value.
#
# A Settings instance is built ONCE by the application factory and handed
# to every component that needs it.  Nothing in ragdesk reads the
# environment on its own, so tests build their own Settings(...) freely.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """ragdesk application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # -- Model serving (OpenAI or any OpenAI-compatible gateway such as OpenRouter) --
    openai_api_key: str = ""
    openai_base_url: str = ""
    chat_model: str = "openai/gpt-4o-mini"
    judge_model: str = "openai/gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    llm_timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 30.0

    # -- Persistence --
    database_path: str = "data/ragdesk.db"
    upload_dir: str = "data/uploads"
    vector_store_backend: str = "chromadb"  # "chromadb" | "memory"
    chromadb_persist_dir: str = "./data/chromadb"
    chromadb_collection_prefix: str = "ragdesk_chunks"

    # -- Chunking (token sizes are estimates, see ragdesk.utils.tokens) --
    chunk_size_tokens: int = 500
    chunk_overlap_tokens: int = 100
    chars_per_token: int = 4
    embedding_batch_size: int = 100

    # -- Retrieval / prompt budgets --
    rag_top_k: int = 5
    max_context_tokens: int = 4000
    max_history_tokens: int = 4000
    history_message_window: int = 10

    # -- Safety judge --
    judge_timeout_seconds: float = 15.0
    judge_pass_threshold: float = 0.7

    # -- Chat streaming --
    stream_checkpoint_min_chars: int = 80

    # -- Jobs / ingestion --
    job_max_attempts: int = 3
    job_stuck_after_seconds: int = 300
    job_retry_backoff_seconds: float = 2.0
    ingestion_concurrency: int = 4
    crawl_default_limit: int = 10
    crawl_concurrency: int = 3
    http_timeout_seconds: float = 20.0

    # -- Plan configuration file --
    config_path: str = "config/config.yaml"

    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"
    cors_allowed_origins: str = "*"

    def get_allowed_origins(self) -> list[str]:
        """Split the comma-separated CORS origin list."""
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]
