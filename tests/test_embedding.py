import asyncio
from typing import List

import pytest

from archive_rag.embedding import EmbeddingClient, cosine_similarity, estimate_embedding_cost
from archive_rag.errors import (
    ConfigurationError,
    EmbeddingGenerationError,
    EmptyInputError,
    InvalidRequestError,
)
from conftest import (
    DIMENSIONS,
    FakeEmbeddings,
    FakeOpenAI,
    authentication_error,
    bad_request_error,
    connection_error,
    rate_limit_error,
    vector_for,
)


class TimedEmbeddings(FakeEmbeddings):
    """Earlier calls take longer, so calls finish in reverse order of submission."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.submitted = 0
        self.in_flight = 0
        self.peak = 0
        self.finished: List[List[str]] = []

    async def create(self, model, input, dimensions=DIMENSIONS, **kwargs):
        delay = max(0.0, 0.08 - 0.02 * self.submitted)
        self.submitted += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(delay)
            return await super().create(model, input, dimensions, **kwargs)
        finally:
            self.in_flight -= 1
            self.finished.append(list(input))


def _client(embeddings: FakeEmbeddings, max_retries: int = 3) -> EmbeddingClient:
    return EmbeddingClient(FakeOpenAI(embeddings=embeddings), dimensions=DIMENSIONS, max_retries=max_retries, backoff=0)


@pytest.mark.asyncio
async def test_embed_returns_vector(embedder, fake_openai):
    vec = await embedder.embed("The archive opens at nine.")
    assert vec == vector_for("The archive opens at nine.")
    assert fake_openai.embeddings.calls == [["The archive opens at nine."]]


@pytest.mark.asyncio
async def test_embed_rejects_blank_text_without_calling_provider(embedder, fake_openai):
    with pytest.raises(EmptyInputError):
        await embedder.embed("   ")
    assert fake_openai.embeddings.calls == []


@pytest.mark.asyncio
async def test_embed_retries_transient_failures():
    embeddings = FakeEmbeddings(errors=[rate_limit_error(), connection_error()])
    vec = await _client(embeddings).embed("hello")
    assert vec == vector_for("hello")
    assert len(embeddings.calls) == 3


@pytest.mark.asyncio
async def test_embed_gives_up_after_retry_budget():
    embeddings = FakeEmbeddings(errors=[connection_error() for _ in range(10)])
    with pytest.raises(EmbeddingGenerationError):
        await _client(embeddings, max_retries=3).embed("hello")
    # first attempt plus three retries
    assert len(embeddings.calls) == 4


@pytest.mark.asyncio
async def test_embed_does_not_retry_invalid_requests():
    embeddings = FakeEmbeddings(errors=[bad_request_error("dimension mismatch")])
    with pytest.raises(InvalidRequestError):
        await _client(embeddings).embed("hello")
    assert len(embeddings.calls) == 1


@pytest.mark.asyncio
async def test_rejected_api_key_names_the_credential():
    embeddings = FakeEmbeddings(errors=[authentication_error()])
    with pytest.raises(ConfigurationError) as exc_info:
        await _client(embeddings).embed("hello")
    assert exc_info.value.setting == "OPENAI_API_KEY"
    assert len(embeddings.calls) == 1


@pytest.mark.asyncio
async def test_embed_batch_preserves_order_and_blank_slots():
    embeddings = FakeEmbeddings()
    texts = ["alpha", "", "beta", "   ", "gamma", "delta", "epsilon"]
    out = await _client(embeddings).embed_batch(texts, batch_size=2, concurrency=2)

    assert len(out) == len(texts)
    assert out[1] is None and out[3] is None
    for i in (0, 2, 4, 5, 6):
        assert out[i] == vector_for(texts[i])
    # Blank texts are never sent
    assert all(t.strip() for call in embeddings.calls for t in call)


@pytest.mark.asyncio
async def test_embed_batch_recovers_from_a_failed_batch():
    texts = [f"archive passage {i:03d}" for i in range(100)]
    embeddings = FakeEmbeddings(fail_batches_with=texts[42])
    progress = []

    out = await _client(embeddings).embed_batch(
        texts, batch_size=10, concurrency=5, on_progress=lambda done, total: progress.append((done, total))
    )

    assert len(out) == 100
    assert out == [vector_for(t) for t in texts]
    # The failing batch (texts 40-49) was retried one text at a time
    singles = [call[0] for call in embeddings.calls if len(call) == 1]
    assert sorted(singles) == texts[40:50]
    assert progress == [(50, 100), (100, 100)]


@pytest.mark.asyncio
async def test_embed_batch_order_survives_out_of_order_completion():
    texts = [f"letter {i}" for i in range(12)]
    embeddings = TimedEmbeddings()

    out = await _client(embeddings).embed_batch(texts, batch_size=3, concurrency=4)

    assert embeddings.finished == [texts[9:12], texts[6:9], texts[3:6], texts[0:3]]
    assert out == [vector_for(t) for t in texts]


@pytest.mark.asyncio
async def test_fallback_calls_share_the_concurrency_budget():
    texts = [f"passage {i:02d}" for i in range(20)]
    embeddings = TimedEmbeddings(fail_batches_with=texts[0])

    out = await _client(embeddings).embed_batch(texts, batch_size=5, concurrency=2)

    assert out == [vector_for(t) for t in texts]
    assert len([call for call in embeddings.calls if len(call) == 1]) == 5
    assert embeddings.peak <= 2


@pytest.mark.asyncio
async def test_embed_batch_leaves_individually_failing_text_empty():
    texts = ["good one", "poison", "good two"]
    embeddings = FakeEmbeddings(reject=["poison"])

    out = await _client(embeddings).embed_batch(texts, batch_size=10)

    assert out[0] == vector_for("good one")
    assert out[1] is None
    assert out[2] == vector_for("good two")


@pytest.mark.asyncio
async def test_embed_batch_all_blank():
    embeddings = FakeEmbeddings()
    assert await _client(embeddings).embed_batch(["", " "]) == [None, None]
    assert embeddings.calls == []


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    with pytest.raises(InvalidRequestError):
        cosine_similarity([1.0], [1.0, 2.0])


def test_estimate_embedding_cost():
    assert estimate_embedding_cost(10_000, cost_per_1k_tokens=0.00013) == pytest.approx(0.0013)
    assert estimate_embedding_cost(0) == 0.0
