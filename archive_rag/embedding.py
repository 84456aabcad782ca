"""Embedding client wrapping OpenAI's embeddings API.

Provides:
- EmbeddingClient.embed / embed_query: one text to one vector, with retries.
- EmbeddingClient.embed_batch: order-preserving batched embedding with bounded
  concurrency and a per-text fallback when a whole batch fails.
- estimate_embedding_cost: token count to dollars at the configured rate.
- cosine_similarity: vector comparison helper for tests and diagnostics.

Models and dimensions default to archive_rag.config.settings.
"""
import asyncio
import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from archive_rag.config import settings
from archive_rag.errors import (
    PROVIDER_ERRORS,
    EmbeddingGenerationError,
    EmptyInputError,
    InvalidRequestError,
    TransientProviderError,
    rejection_for,
)
from archive_rag.retry import provider_retrying

logger = logging.getLogger(__name__)

Embedding = List[float]
ProgressCallback = Callable[[int, int], None]


def estimate_embedding_cost(total_tokens: int, cost_per_1k_tokens: Optional[float] = None) -> float:
    """Estimated dollar cost of embedding ``total_tokens`` tokens."""
    rate = settings.EMBEDDING_COST_PER_1K_TOKENS if cost_per_1k_tokens is None else cost_per_1k_tokens
    return (total_tokens / 1000) * rate


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 if either is all zeros)."""
    if len(a) != len(b):
        raise InvalidRequestError("Embeddings must have the same dimensions", stage="embedding")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


async def _gather_settled(aws) -> list:
    """gather that waits for every awaitable before re-raising the first failure."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class EmbeddingClient:
    """Maps text to fixed-dimension vectors via the OpenAI embeddings endpoint.

    The instance holds no per-call state, so one client is shared by every
    in-flight request in the process.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        self.max_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.backoff = settings.RETRY_BACKOFF_SECONDS if backoff is None else backoff

    async def _create(self, inputs: List[str]) -> List[Embedding]:
        resp = await self.client.embeddings.create(
            model=self.model,
            input=inputs,
            dimensions=self.dimensions,
        )
        data = sorted(resp.data, key=lambda d: d.index)
        if len(data) != len(inputs):
            raise TransientProviderError(
                f"Expected {len(inputs)} embeddings, got {len(data)}", stage="embedding"
            )
        return [d.embedding for d in data]

    async def embed(self, text: str) -> Embedding:
        """Embed a single non-blank text.

        Raises:
            EmptyInputError: text is blank.
            InvalidRequestError: the provider rejected the input; not retried.
            EmbeddingGenerationError: transient failures outlasted the retry budget.
        """
        if not text or not text.strip():
            raise EmptyInputError()
        try:
            async for attempt in provider_retrying(self.max_retries, self.backoff):
                with attempt:
                    vectors = await self._create([text])
        except PROVIDER_ERRORS as exc:
            rejection = rejection_for(exc, "embedding")
            if rejection is not None:
                raise rejection from exc
            raise EmbeddingGenerationError(
                f"Failed to generate embedding after {self.max_retries} retries: {exc}"
            ) from exc
        return vectors[0]

    async def embed_query(self, query: str) -> Embedding:
        """Embed a user query; same contract as embed."""
        return await self.embed(query)

    async def _embed_isolated(self, text: str, semaphore: asyncio.Semaphore) -> Optional[Embedding]:
        async with semaphore:
            try:
                return await self.embed(text)
            except (InvalidRequestError, EmbeddingGenerationError):
                logger.exception("Embedding failed for a single text (%d chars); leaving it empty", len(text))
                return None

    async def _embed_group(
        self, batch: List[Tuple[int, str]], semaphore: asyncio.Semaphore
    ) -> List[Tuple[int, Optional[Embedding]]]:
        # Batch and per-text calls draw on the same semaphore
        try:
            async with semaphore:
                vectors: List[Optional[Embedding]] = list(await self._create([t for _, t in batch]))
        except PROVIDER_ERRORS as exc:
            logger.warning("Batch of %d texts failed (%s); retrying individually", len(batch), exc)
            vectors = await _gather_settled([self._embed_isolated(t, semaphore) for _, t in batch])
        return [(index, vec) for (index, _), vec in zip(batch, vectors)]

    async def embed_batch(
        self,
        texts: Sequence[str],
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Optional[Embedding]]:
        """Embed many texts, preserving input order.

        Blank texts are never sent; their slots (and slots of texts that failed
        even individually) hold None, so ``result[i]`` always belongs to ``texts[i]``.

        Args:
            texts: Texts to embed.
            batch_size: Texts per provider call (default settings.EMBEDDING_BATCH_SIZE).
            concurrency: Batch calls in flight at once (default settings.EMBEDDING_CONCURRENCY).
            on_progress: Called as ``(completed, total_valid)`` after each batch group.

        Returns:
            List[Optional[Embedding]]: Same length as ``texts``.
        """
        batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        concurrency = concurrency or settings.EMBEDDING_CONCURRENCY

        out: List[Optional[Embedding]] = [None] * len(texts)
        valid = [(i, t) for i, t in enumerate(texts) if t and t.strip()]
        if not valid:
            return out

        batches = [valid[i:i + batch_size] for i in range(0, len(valid), batch_size)]
        semaphore = asyncio.Semaphore(concurrency)
        completed = 0

        for g in range(0, len(batches), concurrency):
            group = batches[g:g + concurrency]
            results = await _gather_settled([self._embed_group(b, semaphore) for b in group])
            for pairs in results:
                for index, vec in pairs:
                    out[index] = vec
            completed += sum(len(b) for b in group)
            logger.debug("Embeddings progress: %d/%d", completed, len(valid))
            if on_progress:
                on_progress(completed, len(valid))
        return out
