"""Process-wide client registry.

Each getter builds its client on first use and returns the same instance afterwards,
so one OpenAI connection pool and one vector index handle serve every request in the
process. The getters double as FastAPI dependencies; tests override them or call
reset_clients() between cases.
"""
import logging
from typing import Any, Callable, Dict

from openai import AsyncOpenAI

from archive_rag.config import settings
from archive_rag.db import dispose_engine
from archive_rag.embedding import EmbeddingClient
from archive_rag.errors import ConfigurationError
from archive_rag.generation import AnswerGenerator
from archive_rag.pipeline import RAGPipeline
from archive_rag.summarization import Summarizer
from archive_rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

_registry: Dict[str, Any] = {}


def _get(name: str, factory: Callable[[], Any]) -> Any:
    if name not in _registry:
        _registry[name] = factory()
        logger.debug("Initialized %s client", name)
    return _registry[name]


def get_openai_client() -> AsyncOpenAI:
    """Shared AsyncOpenAI client.

    Raises:
        ConfigurationError: OPENAI_API_KEY is not set.
    """
    if not settings.OPENAI_API_KEY:
        raise ConfigurationError("OPENAI_API_KEY is not configured", "OPENAI_API_KEY")
    # Retries are handled by tenacity in each component
    return _get("openai", lambda: AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0))


def get_embedding_client() -> EmbeddingClient:
    return _get("embedding", lambda: EmbeddingClient(get_openai_client()))


def get_vector_index() -> VectorIndex:
    return _get("vector_index", lambda: VectorIndex())


def get_generator() -> AnswerGenerator:
    return _get("generator", lambda: AnswerGenerator(get_openai_client()))


def get_summarizer() -> Summarizer:
    return _get("summarizer", lambda: Summarizer(get_openai_client()))


def get_pipeline() -> RAGPipeline:
    """Shared pipeline wired to the shared clients."""
    return _get(
        "pipeline",
        lambda: RAGPipeline(
            embedder=get_embedding_client(),
            index=get_vector_index(),
            generator=get_generator(),
            summarizer=get_summarizer() if settings.SUMMARIZE_LONG_QUERIES else None,
        ),
    )


def reset_clients() -> None:
    """Forget every cached client and dispose the database engine."""
    _registry.clear()
    dispose_engine()


async def aclose_clients() -> None:
    """Close the OpenAI connection pool, then reset the registry."""
    client = _registry.get("openai")
    if client is not None:
        await client.close()
    reset_clients()
