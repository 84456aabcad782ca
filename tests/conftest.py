"""
Pytest configuration and fixtures.

Settings are read at import time, so the test environment is set up before any
archive_rag import. No test talks to OpenAI or PostgreSQL: the OpenAI client and the
vector index are replaced by the in-memory fakes defined here.
"""

import os

os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("RUNNING_IN_DOCKER", "1")
os.environ.setdefault("ENVIRONMENT", "development")

import hashlib
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Sequence, Union

import httpx
import openai
import pytest

from archive_rag.clients import reset_clients
from archive_rag.embedding import EmbeddingClient, cosine_similarity
from archive_rag.errors import IndexNotReadyError
from archive_rag.generation import AnswerGenerator
from archive_rag.pipeline import RAGPipeline
from archive_rag.records import ChunkMetadata, IndexedRecord, Match
from archive_rag.vector_index import IndexStats

DIMENSIONS = 8
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


# ---- provider errors ------------------------------------------------------


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", OPENAI_URL))


def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL))


def rate_limit_error() -> openai.RateLimitError:
    return openai.RateLimitError("Rate limit reached", response=_response(429), body=None)


def bad_request_error(message: str = "Invalid input") -> openai.BadRequestError:
    return openai.BadRequestError(message, response=_response(400), body=None)


def authentication_error() -> openai.AuthenticationError:
    return openai.AuthenticationError("Incorrect API key provided", response=_response(401), body=None)


# ---- fake OpenAI client ---------------------------------------------------


def vector_for(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    """Deterministic, text-specific embedding."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256 for b in digest[:dimensions]]


class FakeEmbeddings:
    """Replaces ``client.embeddings``.

    Args:
        errors: Exceptions raised by successive calls, before any succeed.
        fail_batches_with: Any multi-text call containing this text fails with a
            connection error; single-text calls succeed.
        reject: Texts rejected with a 400 whenever they are sent.
    """

    def __init__(self, errors=None, fail_batches_with: Optional[str] = None, reject: Sequence[str] = ()):
        self.calls: List[List[str]] = []
        self.errors = list(errors or [])
        self.fail_batches_with = fail_batches_with
        self.reject = set(reject)

    async def create(self, model: str, input: List[str], dimensions: int = DIMENSIONS, **kwargs):
        self.calls.append(list(input))
        if self.errors:
            raise self.errors.pop(0)
        if self.fail_batches_with is not None and len(input) > 1 and self.fail_batches_with in input:
            raise connection_error()
        if self.reject.intersection(input):
            raise bad_request_error("Input rejected")
        data = [SimpleNamespace(index=i, embedding=vector_for(t, dimensions)) for i, t in enumerate(input)]
        # The API does not promise order; make sure callers sort by index
        return SimpleNamespace(data=list(reversed(data)))


def stream_chunk(content: Optional[str]):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    """Stands in for openai.AsyncStream of chat completion chunks."""

    def __init__(self, fragments: Sequence[str], error: Optional[Exception] = None):
        self.fragments = list(fragments)
        self.error = error
        self.yielded = 0
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        yield SimpleNamespace(choices=[])
        for fragment in self.fragments:
            self.yielded += 1
            yield stream_chunk(fragment)
        yield stream_chunk(None)
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


Reply = Union[str, Callable[[List[Dict[str, str]], int], str]]


class FakeCompletions:
    """Replaces ``client.chat.completions``.

    Args:
        reply: Answer text, or a callable ``(messages, max_tokens) -> text``.
        fragments: Streamed fragments (default: ``reply`` split into words).
        errors: Exceptions raised by successive calls, before any succeed.
        stream_error: Raised by the stream after every fragment was sent.
    """

    def __init__(self, reply: Reply = "Grounded answer.", fragments=None, errors=None, stream_error=None):
        self.reply = reply
        self.fragments = fragments
        self.errors = list(errors or [])
        self.stream_error = stream_error
        self.calls: List[dict] = []
        self.streams: List[FakeStream] = []

    async def create(self, model, messages, temperature=None, max_tokens=None, stream=False, **kwargs):
        self.calls.append(
            {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens, "stream": stream}
        )
        if self.errors:
            raise self.errors.pop(0)
        text = self.reply(messages, max_tokens) if callable(self.reply) else self.reply
        if stream:
            fragments = self.fragments if self.fragments is not None else [w + " " for w in text.split()]
            s = FakeStream(fragments, self.stream_error)
            self.streams.append(s)
            return s
        return SimpleNamespace(
            model=f"{model}-2024-08-06",
            choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        )


class FakeOpenAI:
    def __init__(self, embeddings: Optional[FakeEmbeddings] = None, completions: Optional[FakeCompletions] = None):
        self.embeddings = embeddings or FakeEmbeddings()
        self.chat = SimpleNamespace(completions=completions or FakeCompletions())


# ---- fake vector index ----------------------------------------------------


class FakeVectorIndex:
    """In-memory index with the VectorIndex coroutine interface."""

    def __init__(self, name: str = "test_chunks", dimension: int = DIMENSIONS, exists: bool = True, matches=None):
        self.name = name
        self.dimension = dimension
        self.metric = "cosine"
        self.records: Dict[str, IndexedRecord] = {}
        self.queries: List[dict] = []
        self.upserts: List[List[IndexedRecord]] = []
        self.created = exists
        self.matches = matches

    async def exists(self) -> bool:
        return self.created

    async def is_ready(self) -> bool:
        return self.created

    async def ensure_index(self, dimension=None, metric=None) -> bool:
        was_created = self.created
        self.created = True
        return not was_created

    async def upsert(self, records, batch_size=None, on_progress=None) -> int:
        self.upserts.append(list(records))
        for r in records:
            self.records[r.id] = r
        return len(records)

    async def query(self, vector, top_k=5, filter=None) -> List[Match]:
        self.queries.append({"vector": list(vector), "top_k": top_k, "filter": filter})
        if not self.created:
            raise IndexNotReadyError(self.name)
        if self.matches is not None:
            return list(self.matches)[:top_k]
        scored = [Match(r.id, cosine_similarity(vector, r.values), r.metadata) for r in self.records.values()]
        return sorted(scored, key=lambda m: m.score, reverse=True)[:top_k]

    async def delete_stale_chunks(self, chunk_counts, batch_size=None) -> int:
        stale = [
            vid
            for vid, r in self.records.items()
            if r.metadata.document_id in chunk_counts and r.metadata.chunk_index >= chunk_counts[r.metadata.document_id]
        ]
        for vid in stale:
            del self.records[vid]
        return len(stale)

    async def delete_all(self) -> int:
        removed = len(self.records)
        self.records.clear()
        return removed

    async def stats(self) -> IndexStats:
        return IndexStats(self.name, len(self.records), self.dimension, self.metric, len(self.records) / 1000)


def make_match(
    title: str = "Walking the Old Roads",
    url: str = "https://archive.example.com/old-roads",
    content: str = "The old roads were paved in 1820 and still carry travellers today.",
    score: float = 0.87,
    document_id: str = "42",
    chunk_index: int = 0,
) -> Match:
    return Match(
        id=f"doc-{document_id}-chunk-{chunk_index}",
        score=score,
        metadata=ChunkMetadata(
            title=title, url=url, content=content, chunk_index=chunk_index, document_id=document_id
        ),
    )


# ---- fixtures -------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_clients():
    reset_clients()
    yield
    reset_clients()


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def embedder(fake_openai):
    return EmbeddingClient(fake_openai, model="test-embedding", dimensions=DIMENSIONS, max_retries=2, backoff=0)


@pytest.fixture
def generator(fake_openai):
    return AnswerGenerator(fake_openai, model="test-chat", max_retries=2, backoff=0)


@pytest.fixture
def vector_index():
    return FakeVectorIndex(matches=[make_match(), make_match("Bridges", "https://archive.example.com/bridges", score=0.71, document_id="7")])


@pytest.fixture
def pipeline(embedder, vector_index, generator):
    return RAGPipeline(embedder=embedder, index=vector_index, generator=generator)
