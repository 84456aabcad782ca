"""Domain records shared by ingestion, the vector index, and the query pipeline.

Defines:
- Document: source content handed over by an ingestion caller.
- Chunk: one bounded slice of a document's normalized text.
- ChunkMetadata: the closed metadata stored next to every vector.
- IndexedRecord: the (vector_id, embedding, metadata) unit written to the index.
- Match: one similarity-query hit.
- build_vector_id / parse_vector_id: deterministic ids from (document_id, chunk_index).
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

_VECTOR_ID = re.compile(r"^doc-(.+)-chunk-(\d+)$")


def build_vector_id(document_id: str, chunk_index: int) -> str:
    """Deterministic index id for a chunk: ``doc-<documentId>-chunk-<chunkIndex>``."""
    return f"doc-{document_id}-chunk-{chunk_index}"


def parse_vector_id(vector_id: str) -> Optional[Tuple[str, int]]:
    """Inverse of build_vector_id; None when the id was not produced by it."""
    m = _VECTOR_ID.match(vector_id)
    if not m:
        return None
    return m.group(1), int(m.group(2))


@dataclass(frozen=True)
class Document:
    """A unit of source content.

    Attributes:
        id: Stable external identifier.
        title: Display title.
        url: Provenance link.
        raw_content: Markup-bearing text, cleaned before chunking.
    """
    id: str
    title: str
    url: str
    raw_content: str


@dataclass(frozen=True)
class ChunkMetadata:
    """Metadata persisted with each vector.

    ``extra`` holds provider-specific passthrough fields; keys are filtered as
    ``extra.<key>`` so they never collide with the closed fields.
    """
    title: str
    url: str
    content: str
    chunk_index: int
    document_id: str
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of a document's normalized text."""
    document_id: str
    chunk_index: int
    content: str
    title: str
    url: str

    @property
    def vector_id(self) -> str:
        return build_vector_id(self.document_id, self.chunk_index)

    def metadata(self) -> ChunkMetadata:
        return ChunkMetadata(
            title=self.title,
            url=self.url,
            content=self.content,
            chunk_index=self.chunk_index,
            document_id=self.document_id,
        )


@dataclass(frozen=True)
class IndexedRecord:
    """The persisted unit in the vector index."""
    id: str
    values: List[float]
    metadata: ChunkMetadata

    @classmethod
    def from_chunk(cls, chunk: Chunk, embedding: List[float]) -> "IndexedRecord":
        return cls(id=chunk.vector_id, values=embedding, metadata=chunk.metadata())


@dataclass(frozen=True)
class Match:
    """A similarity-query hit; ``score`` is higher-is-better."""
    id: str
    score: float
    metadata: ChunkMetadata
