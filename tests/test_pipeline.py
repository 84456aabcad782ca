import pytest

from archive_rag.errors import EmptyInputError, IndexNotReadyError
from archive_rag.generation import AnswerGenerator
from archive_rag.pipeline import NO_INFORMATION_ANSWER, RAGPipeline, build_citations, make_snippet
from archive_rag.records import IndexedRecord
from archive_rag.schemas import ChatTurn
from archive_rag.summarization import Summarizer
from conftest import FakeCompletions, FakeOpenAI, FakeVectorIndex, make_match, vector_for


@pytest.mark.asyncio
async def test_answer_uses_retrieved_context(pipeline, fake_openai, vector_index):
    result = await pipeline.answer("When were the old roads paved?")

    assert result.answer == "Grounded answer."
    assert result.retrieved_chunks == 2
    assert result.model == "test-chat-2024-08-06"
    assert [c.title for c in result.citations] == ["Walking the Old Roads", "Bridges"]

    assert vector_index.queries[0]["vector"] == vector_for("When were the old roads paved?")
    assert vector_index.queries[0]["top_k"] == 5
    prompt = fake_openai.chat.completions.calls[0]["messages"][-1]["content"]
    assert "The old roads were paved in 1820" in prompt
    assert "USER QUERY: When were the old roads paved?" in prompt


@pytest.mark.asyncio
async def test_empty_retrieval_short_circuits(embedder, generator, fake_openai):
    pipeline = RAGPipeline(embedder=embedder, index=FakeVectorIndex(matches=[]), generator=generator)

    result = await pipeline.answer("Who painted the lighthouse?")

    assert result.answer == NO_INFORMATION_ANSWER
    assert result.citations == []
    assert result.retrieved_chunks == 0
    assert result.model == "test-chat"
    assert fake_openai.chat.completions.calls == []


@pytest.mark.asyncio
async def test_empty_retrieval_short_circuits_streaming(embedder, generator, fake_openai):
    pipeline = RAGPipeline(embedder=embedder, index=FakeVectorIndex(matches=[]), generator=generator)

    stream = await pipeline.stream("Who painted the lighthouse?")
    body = "".join([f async for f in stream])

    assert body == NO_INFORMATION_ANSWER
    assert stream.citations == []
    assert stream.retrieved_chunks == 0
    assert fake_openai.chat.completions.calls == []


@pytest.mark.asyncio
async def test_missing_index_is_not_treated_as_no_results(embedder, generator):
    pipeline = RAGPipeline(embedder=embedder, index=FakeVectorIndex(exists=False), generator=generator)
    with pytest.raises(IndexNotReadyError):
        await pipeline.answer("anything")


@pytest.mark.asyncio
async def test_blank_query_is_rejected(pipeline, vector_index):
    with pytest.raises(EmptyInputError):
        await pipeline.answer("   ")
    assert vector_index.queries == []


@pytest.mark.asyncio
async def test_history_is_bounded_and_ordered(pipeline, fake_openai):
    history = [ChatTurn(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(9)]

    await pipeline.answer("and then?", history=history)

    messages = fake_openai.chat.completions.calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:-1]] == [f"turn {i}" for i in range(3, 9)]
    assert "USER QUERY: and then?" in messages[-1]["content"]


@pytest.mark.asyncio
async def test_per_call_overrides(pipeline, fake_openai, vector_index):
    await pipeline.answer("q", top_k=1, temperature=0.0, max_tokens=50, filter={"documentId": "42"})

    assert vector_index.queries[0]["top_k"] == 1
    assert vector_index.queries[0]["filter"] == {"documentId": "42"}
    call = fake_openai.chat.completions.calls[0]
    assert call["temperature"] == 0.0
    assert call["max_tokens"] == 50


@pytest.mark.asyncio
async def test_stream_gives_citations_before_fragments(embedder, vector_index):
    completions = FakeCompletions(fragments=["In ", "1820", "."])
    client = FakeOpenAI(completions=completions)
    pipeline = RAGPipeline(embedder, vector_index, AnswerGenerator(client, model="test-chat", backoff=0))

    stream = await pipeline.stream("When?")

    assert [c.url for c in stream.citations] == [
        "https://archive.example.com/old-roads",
        "https://archive.example.com/bridges",
    ]
    assert stream.retrieved_chunks == 2
    assert stream.model == "test-chat"
    assert completions.streams[0].yielded == 0

    fragments = [f async for f in stream]
    assert fragments == ["In ", "1820", "."]
    assert stream.fragments_relayed == 3
    assert completions.streams[0].closed


@pytest.mark.asyncio
async def test_stream_cancel_frees_upstream(embedder, vector_index):
    completions = FakeCompletions(fragments=["a ", "b ", "c "])
    pipeline = RAGPipeline(embedder, vector_index, AnswerGenerator(FakeOpenAI(completions=completions), backoff=0))
    stream = await pipeline.stream("q")

    assert await stream.__anext__() == "a "
    await stream.aclose()

    assert completions.streams[0].closed
    assert completions.streams[0].yielded == 1


@pytest.mark.asyncio
async def test_retrieval_over_ingested_records(embedder, generator):
    index = FakeVectorIndex()
    target = make_match(content="Lighthouse keepers logged every storm.", document_id="9")
    other = make_match(content="Bakery ledgers from 1901.", document_id="3")
    await index.upsert(
        [
            IndexedRecord(target.id, vector_for("Lighthouse keepers logged every storm."), target.metadata),
            IndexedRecord(other.id, vector_for("Bakery ledgers from 1901."), other.metadata),
        ]
    )
    pipeline = RAGPipeline(embedder=embedder, index=index, generator=generator, top_k=1)

    matches = await pipeline.retrieve("Lighthouse keepers logged every storm.")

    assert [m.id for m in matches] == ["doc-9-chunk-0"]
    assert matches[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_long_query_is_condensed_for_retrieval_only(embedder, vector_index):
    completions = FakeCompletions(reply="condensed query")
    client = FakeOpenAI(completions=completions)
    summarizer = Summarizer(client, model="test-mini", threshold=10)
    pipeline = RAGPipeline(
        embedder, vector_index, AnswerGenerator(client, model="test-chat", backoff=0), summarizer=summarizer
    )
    query = "Tell me everything the archive holds about the lighthouse keepers and their storm logs."

    await pipeline.answer(query)

    assert vector_index.queries[0]["vector"] == vector_for("condensed query")
    assert f"USER QUERY: {query}" in completions.calls[-1]["messages"][-1]["content"]


def test_snippets_truncate_with_marker_only_when_cut():
    assert make_snippet("short", 150) == "short"
    assert make_snippet("x" * 200, 150) == "x" * 150 + "..."


def test_citations_mirror_matches():
    citations = build_citations([make_match(score=0.91), make_match("B", "u2", "c" * 300, 0.4)], snippet_chars=150)
    assert [c.relevance for c in citations] == [0.91, 0.4]
    assert citations[1].snippet.endswith("...")
    assert len(citations[1].snippet) == 153
