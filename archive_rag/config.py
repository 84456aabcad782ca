"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names (generation, summarization, embeddings)
- The pgvector-backed vector index (connection, table name, metric, provisioning waits)
- Chunking and batching defaults
- Retrieval/generation knobs
- Summarization thresholds
- Optional observability (Langfuse)

A warning is logged if OPENAI_API_KEY is not set when not running in Docker.
"""
import logging
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    Every value here is a default; callers can override the per-call knobs.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4o"
    SUMMARY_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-large"
    EMBEDDING_DIMENSIONS: int = 3072
    EMBEDDING_COST_PER_1K_TOKENS: float = 0.00013

    # Provider calls
    EMBEDDING_BATCH_SIZE: int = 100
    EMBEDDING_CONCURRENCY: int = 5
    PROVIDER_MAX_RETRIES: int = 3
    RETRY_BACKOFF_SECONDS: float = 1.0

    # Vector index
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    VECTOR_INDEX_NAME: str = "archive_chunks"
    VECTOR_INDEX_METRIC: str = "cosine"
    VECTOR_INDEX_CAPACITY: int = 1_000_000
    INDEX_READY_TIMEOUT_SECONDS: float = 60.0
    INDEX_POLL_INTERVAL_SECONDS: float = 2.0
    UPSERT_BATCH_SIZE: int = 100

    # Chunking
    CHUNK_MAX_TOKENS: int = 800
    CHUNK_OVERLAP_TOKENS: int = 200
    MAX_DOCUMENT_TOKENS: int = 200_000

    # Retrieval/Generation
    TOP_K: int = 5
    TEMPERATURE: float = 0.3
    MAX_OUTPUT_TOKENS: int = 800
    HISTORY_MAX_TURNS: int = 6
    SNIPPET_CHARS: int = 150

    # Summarization
    SUMMARY_THRESHOLD_TOKENS: int = 6000
    TWO_STAGE_THRESHOLD_TOKENS: int = 20000
    SUMMARY_MAX_TOKENS: int = 2000
    PARTIAL_SUMMARY_TOKENS: int = 500
    DOCUMENT_SUMMARY_MAX_TOKENS: int = 10000
    SUMMARIZE_LONG_QUERIES: bool = True

    # Runtime
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    OTEL_CONSOLE_EXPORT: bool = False

    @property
    def is_production(self) -> bool:
        """Whether provider error detail must be hidden from end users."""
        return self.ENVIRONMENT.lower() == "production"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()

# Safety check for local dev (inside the API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    if not settings.OPENAI_API_KEY:
        # Avoid raising to allow local scaffolding before setting .env
        logger.warning("OPENAI_API_KEY not set. Set it in .env before running ingestion or /chat.")
