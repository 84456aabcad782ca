"""Document ingestor: clean, chunk, embed, and upsert into the vector index.

Reads documents from a JSON array, JSON Lines, or CSV file, prepares each one
(markup cleaning, title prefix, overlapping chunks), embeds every chunk in
concurrent batches, and upserts the resulting records keyed by
``doc-<documentId>-chunk-<n>`` so re-running an ingestion overwrites instead of
duplicating.

Record fields:
- id: document id (derived from the url when absent)
- title, url: provenance shown in citations
- content (or raw_content / rawContent): HTML or plain text

Usage:
  python -m archive_rag.ingestion.ingest_documents --init
  python -m archive_rag.ingestion.ingest_documents --file posts.jsonl
  python -m archive_rag.ingestion.ingest_documents --stats
  python -m archive_rag.ingestion.ingest_documents --delete-all

Configuration:
- Index: archive_rag.config.settings.VECTOR_INDEX_NAME, DATABASE_URL
- Embeddings: settings.OPENAI_EMBEDDING_MODEL, EMBEDDING_DIMENSIONS
- Chunk params: settings.CHUNK_MAX_TOKENS, CHUNK_OVERLAP_TOKENS
"""
from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from archive_rag.clients import aclose_clients, get_embedding_client, get_vector_index
from archive_rag.config import settings
from archive_rag.embedding import EmbeddingClient, estimate_embedding_cost
from archive_rag.errors import DocumentTooLargeError, IndexNotReadyError
from archive_rag.records import Chunk, Document, IndexedRecord
from archive_rag.text import TokenEstimator, chunk_text, clean_html, estimate_tokens, stable_doc_id
from archive_rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class PreparedDocument:
    """A document after cleaning and chunking.

    Attributes:
        document: The source document.
        content: Cleaned plain text (without the title prefix).
        chunks: Chunks of ``"<title>\\n\\n<content>"`` in order.
        total_tokens: Estimated tokens of the titled text.
    """
    document: Document
    content: str
    chunks: List[Chunk]
    total_tokens: int


@dataclass
class IngestionStats:
    documents_processed: int = 0
    chunks_generated: int = 0
    embeddings_created: int = 0
    vectors_upserted: int = 0
    stale_vectors_deleted: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    errors: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def prepare_document(
    document: Document,
    max_tokens: Optional[int] = None,
    overlap: Optional[int] = None,
    estimator: TokenEstimator = estimate_tokens,
) -> PreparedDocument:
    """Clean a document's markup, prefix its title, and chunk it.

    The title is repeated at the top of the text so the first chunk carries it
    for retrieval.
    """
    max_tokens = max_tokens or settings.CHUNK_MAX_TOKENS
    overlap = settings.CHUNK_OVERLAP_TOKENS if overlap is None else overlap

    content = clean_html(document.raw_content)
    full_text = f"{document.title}\n\n{content}" if document.title else content
    pieces = chunk_text(full_text, max_tokens=max_tokens, overlap=overlap, estimator=estimator)
    chunks = [
        Chunk(document_id=document.id, chunk_index=i, content=piece, title=document.title, url=document.url)
        for i, piece in enumerate(pieces)
    ]
    return PreparedDocument(document, content, chunks, estimator(full_text))


def prepare_documents(
    documents: Iterable[Document],
    max_tokens: Optional[int] = None,
    overlap: Optional[int] = None,
    estimator: TokenEstimator = estimate_tokens,
) -> List[PreparedDocument]:
    """Batch form of prepare_document, preserving order."""
    return [prepare_document(d, max_tokens, overlap, estimator) for d in documents]


def _check_document(document: Document, max_document_tokens: int) -> bool:
    if not document.id or not document.raw_content or not document.raw_content.strip():
        logger.warning("Skipping document with missing data: id=%r, title=%r", document.id, document.title)
        return False
    tokens = estimate_tokens(document.raw_content)
    if tokens > max_document_tokens:
        err = DocumentTooLargeError(document.id, tokens, max_document_tokens)
        logger.warning("Skipping document: %s", err.message)
        return False
    return True


async def ingest_documents(
    documents: Sequence[Document],
    embedder: EmbeddingClient,
    index: VectorIndex,
    max_tokens: Optional[int] = None,
    overlap: Optional[int] = None,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> IngestionStats:
    """Prepare, embed and upsert documents into an existing index.

    Documents missing an id or content, or above MAX_DOCUMENT_TOKENS, are skipped
    and counted in ``errors``. Chunks whose embedding failed are skipped too; every
    other chunk keeps its own vector id, so no record is ever shifted. Chunks left
    over from a longer earlier version of a document are deleted after the upsert.

    Raises:
        IndexNotReadyError: the index has not been created (run with --init).
    """
    t0 = time.time()
    stats = IngestionStats()
    if not await index.exists():
        raise IndexNotReadyError(index.name)

    prepared: List[PreparedDocument] = []
    for document in documents:
        if not _check_document(document, settings.MAX_DOCUMENT_TOKENS):
            stats.errors += 1
            continue
        doc = prepare_document(document, max_tokens, overlap)
        prepared.append(doc)
        stats.documents_processed += 1
        stats.total_tokens += doc.total_tokens

    chunks = [c for doc in prepared for c in doc.chunks]
    stats.chunks_generated = len(chunks)
    logger.info("Prepared %d documents into %d chunks", stats.documents_processed, len(chunks))
    if not chunks:
        stats.duration_seconds = time.time() - t0
        return stats

    def _progress(done: int, total: int) -> None:
        logger.info("Embedded %d/%d chunks", done, total)

    embeddings = await embedder.embed_batch(
        [c.content for c in chunks], batch_size=batch_size, concurrency=concurrency, on_progress=_progress
    )
    records: List[IndexedRecord] = []
    for chunk, embedding in zip(chunks, embeddings):
        if embedding is None:
            logger.warning("No embedding for %s; skipping", chunk.vector_id)
            stats.errors += 1
            continue
        records.append(IndexedRecord.from_chunk(chunk, embedding))
    stats.embeddings_created = len(records)

    stats.vectors_upserted = await index.upsert(records)
    stats.stale_vectors_deleted = await index.delete_stale_chunks(
        {doc.document.id: len(doc.chunks) for doc in prepared}
    )
    stats.estimated_cost = estimate_embedding_cost(stats.total_tokens)
    stats.duration_seconds = time.time() - t0
    logger.info(
        "Ingestion complete: docs=%d chunks=%d vectors=%d stale=%d errors=%d cost=$%.4f (%.1fs)",
        stats.documents_processed,
        stats.chunks_generated,
        stats.vectors_upserted,
        stats.stale_vectors_deleted,
        stats.errors,
        stats.estimated_cost,
        stats.duration_seconds,
    )
    return stats


def _to_document(row: Dict[str, Any]) -> Document:
    url = str(row.get("url") or "").strip()
    doc_id = str(row.get("id") or "").strip() or (stable_doc_id(url) if url else "")
    content = row.get("content") or row.get("raw_content") or row.get("rawContent") or ""
    return Document(id=doc_id, title=str(row.get("title") or "").strip(), url=url, raw_content=str(content))


def load_documents(path: Path) -> List[Document]:
    """Read documents from a .json (array), .jsonl or .csv file."""
    suffix = path.suffix.lower()
    with path.open(encoding="utf-8", newline="" if suffix == ".csv" else None) as f:
        if suffix == ".jsonl":
            rows = [json.loads(line) for line in f if line.strip()]
        elif suffix == ".csv":
            rows = list(csv.DictReader(f))
        else:
            rows = json.load(f)
    if isinstance(rows, dict):
        rows = rows.get("documents", [])
    logger.info("Loaded %d records from %s", len(rows), path)
    return [_to_document(r) for r in rows]


async def _run(args: argparse.Namespace) -> None:
    index = get_vector_index()
    try:
        if args.init:
            created = await index.ensure_index()
            print(f"[INIT] {index.name} {'created' if created else 'already exists'}")
        if args.delete_all:
            removed = await index.delete_all()
            print(f"[DELETE] {index.name} -> {removed} vectors removed")
        if args.file:
            documents = load_documents(Path(args.file))
            stats = await ingest_documents(
                documents,
                get_embedding_client(),
                index,
                batch_size=args.batch_size,
                concurrency=args.concurrency,
            )
            print(f"[INGEST] {args.file} -> {json.dumps(stats.as_dict())}")
        if args.stats:
            print(f"[STATS] {json.dumps((await index.stats()).as_dict())}")
    finally:
        await aclose_clients()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Ingest documents into the archive vector index.")
    parser.add_argument("--init", action="store_true", help="Create the index if missing and wait until ready")
    parser.add_argument("--file", help="JSON, JSONL or CSV file of documents to ingest")
    parser.add_argument("--delete-all", action="store_true", help="Remove every vector from the index")
    parser.add_argument("--stats", action="store_true", help="Print index statistics")
    parser.add_argument("--batch-size", type=int, default=None, help="Texts per embedding call")
    parser.add_argument("--concurrency", type=int, default=None, help="Embedding calls in flight")
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help=f"Logging verbosity (default: {settings.LOG_LEVEL})",
    )
    args = parser.parse_args(argv)
    if not (args.init or args.file or args.delete_all or args.stats):
        parser.error("nothing to do: pass --init, --file, --delete-all or --stats")

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    try:
        asyncio.run(_run(args))
    except Exception:
        logger.exception("Ingestion command failed")
        raise


if __name__ == "__main__":
    main()
