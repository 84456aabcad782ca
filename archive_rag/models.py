"""Table definition for the vector index.

Each vector index is one PostgreSQL table whose name is the index name. A row holds
a chunk's closed metadata (document_id, chunk_index, title, url, content), a JSONB
``extra`` map for passthrough fields, and its embedding.

pgvector's HNSW and IVFFlat indexes accept at most 2000 dimensions for ``vector``;
wider embeddings are stored as ``halfvec`` (up to 4000 dimensions).
"""
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Integer, MetaData, String, Table, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from pgvector.sqlalchemy import HALFVEC, Vector

MAX_VECTOR_INDEX_DIM = 2000


def vector_kind(dimension: int) -> str:
    """pgvector type family used for a dimension: 'vector' or 'halfvec'."""
    return "vector" if dimension <= MAX_VECTOR_INDEX_DIM else "halfvec"


def build_chunk_table(name: str, dimension: int, metadata: Optional[MetaData] = None) -> Table:
    """Describe the table backing the index ``name`` for vectors of ``dimension``.

    Indexes:
        - idx_<name>_document: speeds up per-document deletes and filters
    """
    embedding_type = Vector(dimension) if vector_kind(dimension) == "vector" else HALFVEC(dimension)
    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("vector_id", String(512), primary_key=True),
        # Document level metadata
        Column("document_id", String(256), nullable=False),
        Column("title", String(1024), nullable=False, default=""),
        Column("url", String(2048), nullable=False, default=""),
        # Chunk level metadata
        Column("chunk_index", Integer, nullable=False),
        Column("content", Text, nullable=False),
        Column("extra", JSONB, nullable=False, server_default=text("'{}'::jsonb")),
        Column("embedding", embedding_type, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Index(f"idx_{name}_document", "document_id"),
    )
