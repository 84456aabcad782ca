"""Query-time orchestration: embed the question, retrieve, prompt, generate.

Each query walks EMBEDDING_QUERY -> RETRIEVING -> ASSEMBLING_PROMPT -> GENERATING
-> DONE. This layer does not retry; every component owns its own retry policy and
a failing stage propagates its typed error to the caller.

When retrieval returns nothing the pipeline answers with a fixed message and never
calls the generative model.
"""
import logging
from enum import Enum
from typing import Any, AsyncIterator, List, Mapping, Optional, Sequence

from archive_rag.config import settings
from archive_rag.embedding import EmbeddingClient
from archive_rag.generation import AnswerGenerator, build_messages
from archive_rag.obs import span
from archive_rag.records import Match
from archive_rag.schemas import ChatTurn, Citation, RAGResult
from archive_rag.summarization import Summarizer
from archive_rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

NO_INFORMATION_ANSWER = (
    "I couldn't find any relevant information in the archive for your question. "
    "Could you try rephrasing or asking about a different topic?"
)


class Stage(str, Enum):
    EMBEDDING_QUERY = "embedding_query"
    RETRIEVING = "retrieving"
    ASSEMBLING_PROMPT = "assembling_prompt"
    GENERATING = "generating"
    DONE = "done"


def _enter(stage: Stage, **details: Any) -> None:
    logger.debug("Pipeline stage %s %s", stage.name, details or "")


def make_snippet(content: str, max_chars: int) -> str:
    """First ``max_chars`` characters of a chunk, with "..." only when cut."""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "..."


def build_citations(matches: Sequence[Match], snippet_chars: Optional[int] = None) -> List[Citation]:
    """One citation per retrieved chunk, in rank order; relevance is the raw score."""
    snippet_chars = snippet_chars or settings.SNIPPET_CHARS
    return [
        Citation(
            title=m.metadata.title,
            url=m.metadata.url,
            relevance=m.score,
            snippet=make_snippet(m.metadata.content, snippet_chars),
        )
        for m in matches
    ]


class AnswerStream:
    """A streaming answer: citations up front, answer fragments as they arrive.

    Iterate it for text fragments. ``aclose()`` stops relaying and releases the
    upstream model connection; fragments already delivered are not retracted.
    """

    def __init__(self, citations: List[Citation], retrieved_chunks: int, model: str, fragments: AsyncIterator[str]):
        self.citations = citations
        self.retrieved_chunks = retrieved_chunks
        self.model = model
        self.fragments_relayed = 0
        self._fragments = fragments

    def __aiter__(self) -> "AnswerStream":
        return self

    async def __anext__(self) -> str:
        try:
            fragment = await self._fragments.__anext__()
        except StopAsyncIteration:
            _enter(Stage.DONE, fragments=self.fragments_relayed)
            raise
        self.fragments_relayed += 1
        return fragment

    async def aclose(self) -> None:
        await self._fragments.aclose()


async def _fixed(text: str) -> AsyncIterator[str]:
    yield text


class RAGPipeline:
    """End-to-end retrieval-augmented answering over the archive.

    Args:
        embedder: Embeds the query.
        index: Vector index to search.
        generator: Generative model wrapper.
        summarizer: Optional; condenses over-long queries before embedding.
        top_k: Default number of chunks to retrieve.
        snippet_chars: Citation snippet length.
        history_turns: Most recent conversation turns forwarded to the model.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        index: VectorIndex,
        generator: AnswerGenerator,
        summarizer: Optional[Summarizer] = None,
        top_k: Optional[int] = None,
        snippet_chars: Optional[int] = None,
        history_turns: Optional[int] = None,
    ):
        self.embedder = embedder
        self.index = index
        self.generator = generator
        self.summarizer = summarizer
        self.top_k = top_k or settings.TOP_K
        self.snippet_chars = snippet_chars or settings.SNIPPET_CHARS
        self.history_turns = settings.HISTORY_MAX_TURNS if history_turns is None else history_turns

    async def _search_text(self, query: str) -> str:
        # Only the embedding sees the condensed query; the prompt keeps the original
        if self.summarizer is None or not query.strip():
            return query
        result = await self.summarizer.summarize(query)
        if result.strategy != "passthrough":
            logger.info(
                "Condensed long query for retrieval: %d -> %d tokens", result.original_tokens, result.summary_tokens
            )
        return result.summary

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[Match]:
        """Embed the query and return the nearest chunks, best first."""
        top_k = top_k or self.top_k
        _enter(Stage.EMBEDDING_QUERY, chars=len(query))
        with span("embed_query", {"chars": len(query)}):
            vector = await self.embedder.embed_query(await self._search_text(query))

        _enter(Stage.RETRIEVING, top_k=top_k)
        with span("retrieve", {"top_k": top_k}):
            matches = await self.index.query(vector, top_k=top_k, filter=filter)
        logger.info(
            "Retrieved %d chunks (top score %.3f)", len(matches), matches[0].score if matches else 0.0
        )
        return matches

    def _messages(self, query: str, matches: Sequence[Match], history: Optional[Sequence[ChatTurn]]):
        _enter(Stage.ASSEMBLING_PROMPT, chunks=len(matches), history=len(history or []))
        return build_messages(query, matches, history, self.history_turns)

    async def answer(
        self,
        query: str,
        history: Optional[Sequence[ChatTurn]] = None,
        top_k: Optional[int] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> RAGResult:
        """Answer in one blocking call.

        Returns:
            RAGResult: Answer text, citations, number of retrieved chunks and model.
        """
        matches = await self.retrieve(query, top_k, filter)
        citations = build_citations(matches, self.snippet_chars)
        if not matches:
            _enter(Stage.DONE, short_circuit=True)
            return RAGResult(
                answer=NO_INFORMATION_ANSWER, citations=[], retrieved_chunks=0, model=self.generator.model
            )

        messages = self._messages(query, matches, history)
        _enter(Stage.GENERATING, model=self.generator.model)
        with span("generate", {"model": self.generator.model}):
            text, model = await self.generator.complete(messages, temperature=temperature, max_tokens=max_tokens)
        _enter(Stage.DONE, chars=len(text))
        return RAGResult(answer=text, citations=citations, retrieved_chunks=len(matches), model=model)

    async def stream(
        self,
        query: str,
        history: Optional[Sequence[ChatTurn]] = None,
        top_k: Optional[int] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> AnswerStream:
        """Retrieve, open the model stream, and hand back citations plus fragments.

        Failures before the first fragment (embedding, retrieval, opening the
        completion) raise here; failures mid-stream raise from iteration.
        """
        matches = await self.retrieve(query, top_k, filter)
        citations = build_citations(matches, self.snippet_chars)
        if not matches:
            _enter(Stage.DONE, short_circuit=True)
            return AnswerStream([], 0, self.generator.model, _fixed(NO_INFORMATION_ANSWER))

        messages = self._messages(query, matches, history)
        _enter(Stage.GENERATING, model=self.generator.model, stream=True)
        fragments = await self.generator.stream(messages, temperature=temperature, max_tokens=max_tokens)
        return AnswerStream(citations, len(matches), self.generator.model, fragments)
