"""LanceDB-backed storage for issues, chunks, vectors and sync metadata.

The store is the sole owner of the index invariants:

- every chunk has exactly one vector and every vector belongs to a chunk;
- an issue's chunks are only ever replaced as a whole;
- multi-table writes go through `transaction()`, which rolls every touched
  table back to its starting version if any step fails.

No ANN index is built, so vector search is an exact (flat) scan with the
cosine metric: distance 0 means identical direction, 2 means opposite.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

import lancedb
import pyarrow as pa

from errors import ConfigurationError, StorageError
from models import (
    CHUNK_METADATA,
    EMBEDDING_DIM,
    Chunk,
    ChunkRecord,
    IssueRecord,
    SearchResult,
    SyncMetaRecord,
    VectorRecord,
)
from utils import escape_filter_value, in_filter

logger = logging.getLogger(__name__)

ISSUES = "issues"
CHUNKS = "chunks"
VECTORS = "vectors"
SYNC_METADATA = "sync_metadata"
SCHEMAS = {
    ISSUES: IssueRecord,
    CHUNKS: ChunkRecord,
    VECTORS: VectorRecord,
    SYNC_METADATA: SyncMetaRecord,
}

NEXT_CHUNK_ID_KEY = "next_chunk_id"
EMBEDDING_MODEL_KEY = "embedding_model"
EMBEDDING_DIM_KEY = "embedding_dim"


def table_names(db: Any) -> list[str]:
    """Names of every table in a LanceDB connection."""
    try:
        names = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(names, "tables", names))


def drop_index_tables(db: Any) -> list[str]:
    """Drop whichever index tables exist. Returns the dropped names.

    Works on a bare connection, so an index that can no longer be opened (built
    for another vector width) can still be removed.
    """
    existing = [name for name in table_names(db) if name in SCHEMAS]
    for name in existing:
        db.drop_table(name)
    return existing


class VectorStore:
    """Durable issue/chunk/vector storage with exact nearest-neighbour search.

    Single writer: callers outside the sync engine must serialize writes that
    touch the same issues.
    """

    def __init__(self, db_path: Path, dim: int = EMBEDDING_DIM) -> None:
        if dim != EMBEDDING_DIM:
            raise ConfigurationError(
                f"Vector table width is {EMBEDDING_DIM} but {dim} was requested; "
                "set EMBEDDING_DIM consistently."
            )
        self.db_path = Path(db_path)
        self.dim = dim
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = lancedb.connect(str(self.db_path))
        # Width first, so a rejected index is left exactly as found.
        self._tables = {VECTORS: self._open_or_create(VECTORS)}
        self._check_vector_width()
        for name in SCHEMAS:
            if name not in self._tables:
                self._tables[name] = self._open_or_create(name)
        self._depth = 0
        self._next_chunk_id = self._load_next_chunk_id()
        logger.info("Vector store initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _open_or_create(self, name: str) -> Any:
        try:
            return self.db.open_table(name)
        except Exception:
            if name in table_names(self.db):
                raise
            return self.db.create_table(name, schema=SCHEMAS[name])

    def _check_vector_width(self) -> None:
        field = self._tables[VECTORS].schema.field("vector")
        width = getattr(field.type, "list_size", None)
        if width != self.dim:
            raise ConfigurationError(
                f"Existing vector table at {self.db_path} stores {width}-dim vectors, "
                f"configured width is {self.dim}. Run mantis-mcp-reindex to rebuild."
            )

    def _select(
        self, name: str, where: str | None = None, columns: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Return every row of `name` matching `where` (no implicit limit)."""
        table = self._tables[name]
        total = table.count_rows(where) if where else table.count_rows()
        if total == 0:
            return []
        query = table.search()
        if where:
            query = query.where(where)
        if columns:
            query = query.select(columns)
        return query.limit(total).to_list()

    def _load_next_chunk_id(self) -> int:
        rows = self._select(CHUNKS, columns=["id"])
        highest = max((r["id"] for r in rows), default=0)
        stored = self.get_meta(NEXT_CHUNK_ID_KEY)
        return max(highest + 1, int(stored) if stored else 1)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes so they all land or none do.

        Re-entrant: nested blocks join the outermost transaction. On failure
        every table is restored to the version captured at the start and a
        `StorageError` is raised.
        """
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        snapshot = {name: table.version for name, table in self._tables.items()}
        self._depth = 1
        try:
            yield
        except Exception as e:
            self._rollback(snapshot)
            if isinstance(e, (StorageError, ConfigurationError)):
                raise
            raise StorageError(f"Transaction rolled back: {e}") from e
        finally:
            self._depth = 0

    def _rollback(self, snapshot: dict[str, int]) -> None:
        for name, version in snapshot.items():
            table = self._tables[name]
            if table.version == version:
                continue
            try:
                table.checkout(version)
                table.restore()
            except Exception:
                logger.exception("Rollback of table %s to version %d failed", name, version)
        self._next_chunk_id = self._load_next_chunk_id()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_issue(self, record: IssueRecord) -> None:
        """Insert or fully replace the cached issue row."""
        self.upsert_issues([record])

    def upsert_issues(self, records: Sequence[IssueRecord]) -> None:
        if not records:
            return
        with self.transaction():
            (
                self._tables[ISSUES]
                .merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute([r.model_dump() for r in records])
            )

    def insert_chunk(self, chunk: Chunk, vector: Sequence[float]) -> int:
        """Store a chunk and its vector together; returns the new chunk id."""
        return self.insert_chunks([(chunk, vector)])[0]

    def insert_chunks(self, pairs: Sequence[tuple[Chunk, Sequence[float]]]) -> list[int]:
        """Store many chunk/vector pairs in one write per table."""
        if not pairs:
            return []
        chunk_rows: list[dict[str, Any]] = []
        vectors: list[list[float]] = []
        next_id = self._next_chunk_id
        for chunk, vector in pairs:
            if len(vector) != self.dim:
                raise ConfigurationError(
                    f"Vector for issue #{chunk.issue_id} has {len(vector)} dims, expected {self.dim}"
                )
            chunk_rows.append(
                ChunkRecord(
                    id=next_id,
                    issue_id=chunk.issue_id,
                    chunk_type=chunk.chunk_type,
                    note_id=chunk.note_id,
                    text=chunk.text,
                    metadata_json=chunk.metadata.model_dump_json(),
                ).model_dump()
            )
            vectors.append([float(v) for v in vector])
            next_id += 1

        vector_rows = pa.table(
            {"chunk_id": [r["id"] for r in chunk_rows], "vector": vectors},
            schema=VectorRecord.to_arrow_schema(),
        )
        with self.transaction():
            self._tables[CHUNKS].add(chunk_rows)
            self._tables[VECTORS].add(vector_rows)
            self.set_meta(NEXT_CHUNK_ID_KEY, str(next_id))
            first_id = self._next_chunk_id
            self._next_chunk_id = next_id
        return list(range(first_id, next_id))

    def delete_issue_chunks(self, issue_id: int) -> int:
        """Remove every chunk and vector of an issue. Returns the chunk count."""
        return self.delete_chunks_for_issues([issue_id])

    def delete_chunks_for_issues(self, issue_ids: Sequence[int]) -> int:
        if not issue_ids:
            return 0
        rows = self._select(CHUNKS, in_filter("issue_id", issue_ids), columns=["id"])
        if not rows:
            return 0
        chunk_ids = [r["id"] for r in rows]
        # Vectors first: the vector table has no cascading delete.
        with self.transaction():
            self._tables[VECTORS].delete(in_filter("chunk_id", chunk_ids))
            self._tables[CHUNKS].delete(in_filter("issue_id", issue_ids))
        return len(chunk_ids)

    def delete_issue(self, issue_id: int) -> None:
        """Remove an issue with all of its chunks and vectors."""
        with self.transaction():
            self.delete_issue_chunks(issue_id)
            self._tables[ISSUES].delete(f"id = {int(issue_id)}")

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction():
            (
                self._tables[SYNC_METADATA]
                .merge_insert("key")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute([{"key": key, "value": value}])
            )

    def reset(self) -> None:
        """Drop and recreate every table (full reindex)."""
        drop_index_tables(self.db)
        self._tables = {name: self._open_or_create(name) for name in SCHEMAS}
        self._next_chunk_id = 1
        logger.info("Vector store at %s reset", self.db_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(self, query_vector: Sequence[float], limit: int = 10) -> list[SearchResult]:
        """Return up to `limit` chunks ordered by ascending cosine distance."""
        if len(query_vector) != self.dim:
            raise ConfigurationError(
                f"Query vector has {len(query_vector)} dims, expected {self.dim}"
            )
        if limit <= 0 or self._tables[VECTORS].count_rows() == 0:
            return []

        hits = (
            self._tables[VECTORS]
            .search([float(v) for v in query_vector])
            .metric("cosine")
            .select(["chunk_id"])
            .limit(limit)
            .to_list()
        )
        if not hits:
            return []
        chunks = {
            row["id"]: row
            for row in self._select(CHUNKS, in_filter("id", [h["chunk_id"] for h in hits]))
        }

        results = []
        for hit in hits:
            row = chunks.get(hit["chunk_id"])
            if row is None:
                continue
            results.append(
                SearchResult(
                    chunk_id=row["id"],
                    distance=float(hit["_distance"]),
                    issue_id=row["issue_id"],
                    chunk_type=row["chunk_type"],
                    note_id=row["note_id"],
                    text=row["text"],
                    metadata=CHUNK_METADATA.validate_json(row["metadata_json"]),
                )
            )
        # Equal distances keep insertion (chunk id) order.
        results.sort(key=lambda r: (r.distance, r.chunk_id))
        return results

    def get_stored_timestamps(self, project_id: int | None = None) -> dict[int, str]:
        """Map issue id -> stored `updated_at`, optionally for one project."""
        where = f"project_id = {int(project_id)}" if project_id is not None else None
        rows = self._select(ISSUES, where, columns=["id", "updated_at"])
        return {r["id"]: r["updated_at"] for r in rows}

    def get_issue(self, issue_id: int) -> IssueRecord | None:
        rows = self._select(ISSUES, f"id = {int(issue_id)}")
        if not rows:
            return None
        return IssueRecord(**{k: rows[0][k] for k in IssueRecord.model_fields})

    def get_chunk_ids(self, issue_id: int) -> set[int]:
        rows = self._select(CHUNKS, f"issue_id = {int(issue_id)}", columns=["id"])
        return {r["id"] for r in rows}

    def get_vector_chunk_ids(self) -> set[int]:
        return {r["chunk_id"] for r in self._select(VECTORS, columns=["chunk_id"])}

    def get_meta(self, key: str) -> str | None:
        rows = self._select(SYNC_METADATA, f"key = '{escape_filter_value(key)}'")
        return rows[0]["value"] if rows else None

    def get_counts(self) -> dict[str, int]:
        return {
            "issues": self._tables[ISSUES].count_rows(),
            "chunks": self._tables[CHUNKS].count_rows(),
        }

    def ensure_embedding_model(self, model_name: str, dim: int) -> None:
        """Bind the index to one embedding model.

        Raises:
            ConfigurationError: if the index was built with another model or width.
        """
        stored_model = self.get_meta(EMBEDDING_MODEL_KEY)
        stored_dim = self.get_meta(EMBEDDING_DIM_KEY)
        if stored_model is None:
            with self.transaction():
                self.set_meta(EMBEDDING_MODEL_KEY, model_name)
                self.set_meta(EMBEDDING_DIM_KEY, str(dim))
            return
        if stored_model != model_name or (stored_dim and int(stored_dim) != dim):
            raise ConfigurationError(
                f"Index was built with {stored_model} ({stored_dim} dims); configured model is "
                f"{model_name} ({dim} dims). Run mantis-mcp-reindex to rebuild the index."
            )
