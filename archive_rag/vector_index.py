"""Vector index adapter over PostgreSQL + pgvector.

Implements the index lifecycle and the read/write paths used by ingestion and the
query pipeline:
- ensure_index: idempotent create, then poll until the HNSW index reports ready
- upsert: batched last-write-wins writes keyed by vector_id
- query: top-K nearest neighbours with optional metadata filters
- delete_stale_chunks: drop chunks a re-ingested document no longer produces
- delete_by_ids / delete_all / stats: administrative operations

All SQLAlchemy work is synchronous and runs in a worker thread so callers on the
event loop only ever await.
"""
import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import and_, delete, func, inspect, or_, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ProgrammingError

from archive_rag.config import settings
from archive_rag.db import ensure_extension, get_engine
from archive_rag.errors import IndexNotReadyError, IndexProvisioningTimeout, InvalidRequestError
from archive_rag.models import build_chunk_table, vector_kind
from archive_rag.records import ChunkMetadata, IndexedRecord, Match

logger = logging.getLogger(__name__)

# metric -> (operator class suffix, pgvector comparator)
METRICS = {
    "cosine": ("cosine_ops", "cosine_distance"),
    "euclidean": ("l2_ops", "l2_distance"),
    "dotproduct": ("ip_ops", "max_inner_product"),
}

UNDEFINED_TABLE = "42P01"
_INDEX_NAME = re.compile(r"^[a-z_][a-z0-9_]{0,50}$")

# Public filter keys -> column names
FILTER_FIELDS = {
    "document_id": "document_id",
    "documentId": "document_id",
    "chunk_index": "chunk_index",
    "chunkIndex": "chunk_index",
    "title": "title",
    "url": "url",
}

ProgressCallback = Callable[[int, int], None]


def distance_to_score(metric: str, distance: float) -> float:
    """Convert a pgvector distance into a higher-is-better similarity score.

    cosine: 1 - distance, clamped to [0, 1]; euclidean: 1 / (1 + distance);
    dotproduct: the inner product (pgvector returns its negation).
    """
    if metric == "cosine":
        return max(0.0, min(1.0, 1.0 - distance))
    if metric == "euclidean":
        return 1.0 / (1.0 + distance)
    return -distance


@dataclass
class IndexStats:
    """Index statistics reported to operators."""
    index_name: str
    record_count: int
    dimension: int
    metric: str
    fill_ratio: float

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VectorIndex:
    """Stores (vector_id, embedding, metadata) rows and answers similarity queries.

    Args:
        engine: SQLAlchemy engine; defaults to the shared engine from archive_rag.db.
        name: Index (table) name; lowercase identifier.
        dimension: Embedding dimension.
        metric: One of 'cosine', 'euclidean', 'dotproduct'.
        capacity: Record count treated as a full index when reporting fill ratio.
        ready_timeout: Seconds to wait for provisioning before giving up.
        poll_interval: Seconds between readiness checks.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        name: Optional[str] = None,
        dimension: Optional[int] = None,
        metric: Optional[str] = None,
        capacity: Optional[int] = None,
        ready_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self._engine = engine
        self.name = name or settings.VECTOR_INDEX_NAME
        if not _INDEX_NAME.match(self.name):
            raise InvalidRequestError(f"Invalid vector index name: {self.name!r}", stage="index")
        self.capacity = capacity or settings.VECTOR_INDEX_CAPACITY
        self.ready_timeout = settings.INDEX_READY_TIMEOUT_SECONDS if ready_timeout is None else ready_timeout
        self.poll_interval = settings.INDEX_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._configure(dimension or settings.EMBEDDING_DIMENSIONS, metric or settings.VECTOR_INDEX_METRIC)

    def _configure(self, dimension: int, metric: str) -> None:
        if metric not in METRICS:
            raise InvalidRequestError(f"Unsupported metric {metric!r}; expected one of {sorted(METRICS)}", stage="index")
        self.dimension = dimension
        self.metric = metric
        self.table = build_chunk_table(self.name, dimension)

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_engine()

    @property
    def ann_index_name(self) -> str:
        return f"idx_{self.name}_embedding_hnsw"

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking database work off the event loop, mapping a missing table."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ProgrammingError as exc:
            if getattr(exc.orig, "pgcode", None) == UNDEFINED_TABLE:
                raise IndexNotReadyError(self.name) from exc
            raise

    # ---- lifecycle -------------------------------------------------------

    def _exists_sync(self) -> bool:
        return inspect(self.engine).has_table(self.name)

    def _is_ready_sync(self) -> bool:
        sql = text(
            """
            SELECT i.indisvalid AND i.indisready
            FROM pg_index i
            JOIN pg_class c ON c.oid = i.indexrelid
            WHERE c.relname = :name
            """
        )
        with self.engine.connect() as conn:
            ready = conn.execute(sql, {"name": self.ann_index_name}).scalar()
        return bool(ready)

    def _create_sync(self) -> None:
        ensure_extension(self.engine)
        self.table.create(self.engine, checkfirst=True)
        opclass = f"{vector_kind(self.dimension)}_{METRICS[self.metric][0]}"
        # CONCURRENTLY cannot run inside a transaction block
        with self.engine.connect() as conn:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(
                text(
                    f"CREATE INDEX CONCURRENTLY IF NOT EXISTS {self.ann_index_name} "
                    f"ON {self.name} USING hnsw (embedding {opclass})"
                )
            )

    def _drop_ann_index_sync(self) -> None:
        with self.engine.connect() as conn:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(text(f"DROP INDEX CONCURRENTLY IF EXISTS {self.ann_index_name}"))

    async def exists(self) -> bool:
        """Whether the backing table has been created."""
        return await self._run(self._exists_sync)

    async def is_ready(self) -> bool:
        """Whether the table exists and its ANN index is valid."""
        if not await self.exists():
            return False
        return await self._run(self._is_ready_sync)

    async def _wait_until_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while not await self._run(self._is_ready_sync):
            if loop.time() >= deadline:
                raise IndexProvisioningTimeout(self.name, self.ready_timeout)
            await asyncio.sleep(self.poll_interval)

    async def ensure_index(self, dimension: Optional[int] = None, metric: Optional[str] = None) -> bool:
        """Create the index if missing and block until it is ready.

        Args:
            dimension: Embedding dimension; defaults to the configured one.
            metric: Similarity metric; defaults to the configured one.

        Returns:
            bool: True if the index was created or rebuilt, False if it was already ready.

        Raises:
            IndexProvisioningTimeout: the index was not ready within ready_timeout.
        """
        if (dimension and dimension != self.dimension) or (metric and metric != self.metric):
            self._configure(dimension or self.dimension, metric or self.metric)

        if await self.exists():
            if await self._run(self._is_ready_sync):
                logger.info("Index %s already exists", self.name)
                return False
            # An interrupted CREATE INDEX CONCURRENTLY leaves an invalid index behind
            logger.warning("Index %s has no valid ANN index; rebuilding it", self.name)
            await self._run(self._drop_ann_index_sync)
        else:
            logger.info("Creating index %s (dimension=%d, metric=%s)", self.name, self.dimension, self.metric)
        await self._run(self._create_sync)
        logger.info("Waiting for index %s to be ready...", self.name)
        await self._wait_until_ready()
        logger.info("Index %s created successfully", self.name)
        return True

    # ---- write path ------------------------------------------------------

    def _row(self, record: IndexedRecord) -> Dict[str, Any]:
        if len(record.values) != self.dimension:
            raise InvalidRequestError(
                f"Vector {record.id} has dimension {len(record.values)}, index expects {self.dimension}",
                stage="index",
            )
        md = record.metadata
        return {
            "vector_id": record.id,
            "document_id": md.document_id,
            "chunk_index": md.chunk_index,
            "title": md.title,
            "url": md.url,
            "content": md.content,
            "extra": dict(md.extra),
            "embedding": list(record.values),
        }

    def upsert_statement(self, records: Sequence[IndexedRecord]):
        """INSERT ... ON CONFLICT (vector_id) DO UPDATE for one batch."""
        stmt = pg_insert(self.table).values([self._row(r) for r in records])
        updated = {
            name: stmt.excluded[name]
            for name in ("document_id", "chunk_index", "title", "url", "content", "extra", "embedding")
        }
        updated["updated_at"] = func.now()
        return stmt.on_conflict_do_update(index_elements=[self.table.c.vector_id], set_=updated)

    def _execute_sync(self, stmt) -> int:
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    async def upsert(
        self,
        records: Sequence[IndexedRecord],
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Write records in batches; each batch commits on its own.

        A failing batch raises the underlying error; earlier batches stay committed.

        Returns:
            int: Number of records written.
        """
        if not records:
            return 0
        batch_size = batch_size or settings.UPSERT_BATCH_SIZE
        completed = 0
        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            try:
                await self._run(self._execute_sync, self.upsert_statement(batch))
            except Exception:
                logger.error("Failed to upsert batch starting at index %d", start)
                raise
            completed += len(batch)
            if on_progress:
                on_progress(completed, len(records))
        logger.info("Upserted %d vectors into %s", completed, self.name)
        return completed

    # ---- read path -------------------------------------------------------

    def _filter_clauses(self, filter: Optional[Mapping[str, Any]]) -> List[Any]:
        clauses: List[Any] = []
        for key, value in (filter or {}).items():
            if key.startswith("extra."):
                column = self.table.c.extra[key[len("extra."):]].astext
                value = _stringify(value)
            elif key in FILTER_FIELDS:
                column = self.table.c[FILTER_FIELDS[key]]
            else:
                raise InvalidRequestError(f"Unsupported filter field: {key}", stage="retrieval")

            if isinstance(value, Mapping):
                for op, operand in value.items():
                    if op == "$eq":
                        clauses.append(column == operand)
                    elif op == "$ne":
                        clauses.append(column != operand)
                    elif op == "$in":
                        clauses.append(column.in_(list(operand)))
                    else:
                        raise InvalidRequestError(f"Unsupported filter operator: {op}", stage="retrieval")
            elif isinstance(value, (list, tuple, set)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def query_statement(self, vector: Sequence[float], top_k: int, filter: Optional[Mapping[str, Any]] = None):
        """SELECT the ``top_k`` nearest rows ordered by the metric's distance."""
        if len(vector) != self.dimension:
            raise InvalidRequestError(
                f"Query vector has dimension {len(vector)}, index expects {self.dimension}", stage="retrieval"
            )
        t = self.table
        distance = getattr(t.c.embedding, METRICS[self.metric][1])(list(vector)).label("distance")
        stmt = select(
            t.c.vector_id, t.c.document_id, t.c.chunk_index, t.c.title, t.c.url, t.c.content, t.c.extra, distance
        )
        for clause in self._filter_clauses(filter):
            stmt = stmt.where(clause)
        return stmt.order_by(distance).limit(top_k)

    def _to_match(self, row: Mapping[str, Any]) -> Match:
        return Match(
            id=row["vector_id"],
            score=distance_to_score(self.metric, float(row["distance"])),
            metadata=ChunkMetadata(
                title=row["title"] or "",
                url=row["url"] or "",
                content=row["content"] or "",
                chunk_index=int(row["chunk_index"]),
                document_id=row["document_id"],
                extra=dict(row["extra"] or {}),
            ),
        )

    def _query_sync(self, stmt) -> List[Match]:
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._to_match(r) for r in rows]

    async def query(
        self,
        vector: Sequence[float],
        top_k: int = 5,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[Match]:
        """Return up to ``top_k`` nearest records by descending similarity.

        An empty index yields []. A missing index raises IndexNotReadyError.
        """
        stmt = self.query_statement(vector, top_k, filter)
        return await self._run(self._query_sync, stmt)

    # ---- administration --------------------------------------------------

    async def delete_by_ids(self, ids: Sequence[str]) -> int:
        """Delete records by vector_id; returns the number removed."""
        if not ids:
            return 0
        stmt = delete(self.table).where(self.table.c.vector_id.in_(list(ids)))
        removed = await self._run(self._execute_sync, stmt)
        logger.info("Deleted %d vectors from %s", removed, self.name)
        return removed

    def delete_stale_statement(self, chunk_counts: Mapping[str, int]):
        """DELETE rows whose chunk_index is at or past each document's current chunk count."""
        t = self.table
        return delete(t).where(
            or_(*[and_(t.c.document_id == doc_id, t.c.chunk_index >= count) for doc_id, count in chunk_counts.items()])
        )

    async def delete_stale_chunks(self, chunk_counts: Mapping[str, int], batch_size: Optional[int] = None) -> int:
        """Remove chunks left over from an earlier, longer version of each document.

        Args:
            chunk_counts: document_id -> number of chunks it has now.
            batch_size: Documents per DELETE statement.

        Returns:
            int: Number of rows removed.
        """
        if not chunk_counts:
            return 0
        batch_size = batch_size or settings.UPSERT_BATCH_SIZE
        items = list(chunk_counts.items())
        removed = 0
        for start in range(0, len(items), batch_size):
            stmt = self.delete_stale_statement(dict(items[start:start + batch_size]))
            removed += await self._run(self._execute_sync, stmt)
        if removed:
            logger.info("Deleted %d stale vectors from %s", removed, self.name)
        return removed

    async def delete_all(self) -> int:
        """Delete every record, keeping the index itself."""
        removed = await self._run(self._execute_sync, delete(self.table))
        logger.info("Deleted all %d vectors from %s", removed, self.name)
        return removed

    def _count_sync(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(self.table)).scalar() or 0)

    async def stats(self) -> IndexStats:
        """Record count, dimension, metric and fill ratio against ``capacity``."""
        count = await self._run(self._count_sync)
        return IndexStats(
            index_name=self.name,
            record_count=count,
            dimension=self.dimension,
            metric=self.metric,
            fill_ratio=count / self.capacity if self.capacity else 0.0,
        )


def _stringify(value: Any) -> Any:
    """JSONB ->> yields text, so passthrough filter operands compare as strings."""
    if isinstance(value, Mapping):
        return {op: _stringify(v) for op, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return str(value)
