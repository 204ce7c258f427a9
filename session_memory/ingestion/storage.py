"""SQLite storage for session chunks, index state, and the search indexes.

Layout:

- ``session_chunks``: one row per chunk, ``UNIQUE(source_id, chunk_index)``,
  embedding stored as a little-endian float32 blob.
- ``source_index_state``: content hash, chunk count and status per source.
- ``session_chunks_fts``: FTS5 index over chunk content; rowid == chunk id.
- ``session_embeddings``: optional sqlite-vec ``vec0`` index keyed by chunk id.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import sqlite_vec

from session_memory.config import Settings
from session_memory.errors import StorageError
from session_memory.ingestion.embeddings import decode_embedding, encode_embedding
from session_memory.ingestion.models import (
    ContextStatus,
    SessionChunk,
    SourceStatus,
    TranscriptSource,
)
from session_memory.ingestion.parsers import format_timestamp
from session_memory.retrieval.models import SearchFilters

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS session_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    timestamp TEXT,
    speakers TEXT NOT NULL DEFAULT '[]',
    topic_tags TEXT NOT NULL DEFAULT '[]',
    has_decision INTEGER NOT NULL DEFAULT 0,
    has_action INTEGER NOT NULL DEFAULT 0,
    content TEXT NOT NULL,
    context_content TEXT,
    context_prefix TEXT,
    context_status TEXT NOT NULL DEFAULT 'pending',
    token_count INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    created_at TEXT NOT NULL,
    UNIQUE (source_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_timestamp ON session_chunks (timestamp);
CREATE INDEX IF NOT EXISTS idx_chunks_source ON session_chunks (source_id);

CREATE TABLE IF NOT EXISTS source_index_state (
    source_id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL,
    file_hash TEXT NOT NULL,
    last_indexed TEXT NOT NULL,
    chunk_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    last_error TEXT
);

CREATE VIRTUAL TABLE IF NOT EXISTS session_chunks_fts USING fts5(
    content,
    tokenize = 'porter'
);
"""

REQUIRED_TABLES = ("session_chunks", "source_index_state")


@dataclass
class StoreStats:
    """Aggregate counts read straight from the store."""

    total_chunks: int = 0
    total_sources: int = 0
    indexed_sources: int = 0
    failed_sources: int = 0
    embedded_chunks: int = 0
    context_complete: int = 0
    context_failed: int = 0
    context_pending: int = 0
    avg_tokens: float = 0.0
    recent_chunks: int = 0
    last_indexed: str | None = None


def _now() -> str:
    return format_timestamp(datetime.now(UTC))


class SessionStore:
    """Single shared handle on the SQLite database.

    Use :meth:`transaction` around every group of writes that must land
    together; the handle rolls back on any exception.
    """

    def __init__(
        self,
        path: str | Path,
        embedding_dimensions: int = 1536,
        use_vector_index: bool = True,
        initialize: bool = True,
    ) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.embedding_dimensions = embedding_dimensions
        self._conn = sqlite3.connect(self.path, timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.vector_index_enabled = use_vector_index and self._load_vector_extension()
        if initialize:
            self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> SessionStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def _load_vector_extension(self) -> bool:
        try:
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as exc:
            # Python builds without extension loading expose no enable_load_extension.
            logger.warning("sqlite-vec unavailable, native vector index disabled: %s", exc)
            return False
        return True

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        try:
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to initialize schema: {exc}") from exc

        if self.vector_index_enabled:
            try:
                self._conn.execute(
                    "CREATE VIRTUAL TABLE IF NOT EXISTS session_embeddings USING vec0("
                    f"chunk_id INTEGER PRIMARY KEY, embedding float[{self.embedding_dimensions}])"
                )
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                logger.warning("Failed to create vector index table: %s", exc)
                self.vector_index_enabled = False

    def tables_present(self) -> bool:
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name IN (?, ?)",
            REQUIRED_TABLES,
        ).fetchall()
        return len(rows) == len(REQUIRED_TABLES)

    @contextmanager
    def transaction(self) -> Iterator[SessionStore]:
        """Commit the enclosed writes together, or roll all of them back."""
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"Constraint violation: {exc}") from exc
        except sqlite3.OperationalError as exc:
            raise StorageError(f"Write failed: {exc}") from exc

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise StorageError(f"Query failed: {exc}") from exc

    def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        rows = self._query(sql, params)
        return rows[0][0] if rows else None

    # ------------------------------------------------------------------
    # Source index state
    # ------------------------------------------------------------------

    def get_source_state(self, source_id: str) -> TranscriptSource | None:
        rows = self._query("SELECT * FROM source_index_state WHERE source_id = ?", (source_id,))
        if not rows:
            return None
        row = rows[0]
        return TranscriptSource(
            source_id=row["source_id"],
            file_path=row["file_path"],
            file_hash=row["file_hash"],
            last_indexed=row["last_indexed"],
            chunk_count=row["chunk_count"],
            status=SourceStatus(row["status"]),
            last_error=row["last_error"],
        )

    def upsert_source_state(self, state: TranscriptSource) -> None:
        self._write(
            """
            INSERT INTO source_index_state
                (source_id, file_path, file_hash, last_indexed, chunk_count, status, last_error)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (source_id) DO UPDATE SET
                file_path = excluded.file_path,
                file_hash = excluded.file_hash,
                last_indexed = excluded.last_indexed,
                chunk_count = excluded.chunk_count,
                status = excluded.status,
                last_error = excluded.last_error
            """,
            (
                state.source_id,
                state.file_path,
                state.file_hash,
                state.last_indexed,
                state.chunk_count,
                str(state.status),
                state.last_error,
            ),
        )

    def update_source_hash(self, source_id: str, file_hash: str) -> None:
        """Record a new content hash without touching the chunk set."""
        self._write(
            "UPDATE source_index_state SET file_hash = ?, last_indexed = ? WHERE source_id = ?",
            (file_hash, _now(), source_id),
        )

    def set_source_status(self, source_id: str, status: SourceStatus) -> None:
        self._write(
            "UPDATE source_index_state SET status = ?, last_indexed = ?, last_error = NULL "
            "WHERE source_id = ?",
            (str(status), _now(), source_id),
        )

    def mark_source_failed(self, source_id: str, file_path: str, error: str) -> None:
        """Flag a source as failed, keeping its previous hash so a retry re-runs."""
        self._write(
            """
            INSERT INTO source_index_state
                (source_id, file_path, file_hash, last_indexed, chunk_count, status, last_error)
            VALUES (?, ?, '', ?, 0, ?, ?)
            ON CONFLICT (source_id) DO UPDATE SET
                last_indexed = excluded.last_indexed,
                status = excluded.status,
                last_error = excluded.last_error
            """,
            (source_id, file_path, _now(), str(SourceStatus.FAILED), error),
        )

    def failed_sources(self) -> list[TranscriptSource]:
        rows = self._query(
            "SELECT source_id FROM source_index_state WHERE status = ? ORDER BY source_id",
            (str(SourceStatus.FAILED),),
        )
        return [
            state
            for state in (self.get_source_state(row["source_id"]) for row in rows)
            if state is not None
        ]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def last_chunk_position(self, source_id: str) -> tuple[int, str | None]:
        """Return ``(max chunk_index, latest timestamp)`` for a source, or ``(-1, None)``."""
        rows = self._query(
            "SELECT MAX(chunk_index), MAX(timestamp) FROM session_chunks WHERE source_id = ?",
            (source_id,),
        )
        last_index, last_timestamp = rows[0][0], rows[0][1]
        return (-1 if last_index is None else last_index), last_timestamp

    def count_chunks(self, source_id: str | None = None) -> int:
        if source_id is None:
            return self._scalar("SELECT COUNT(*) FROM session_chunks") or 0
        return (
            self._scalar("SELECT COUNT(*) FROM session_chunks WHERE source_id = ?", (source_id,))
            or 0
        )

    def insert_chunks(self, chunks: list[SessionChunk]) -> list[int]:
        """Insert new chunks and their full-text rows; sets ``chunk.id``.

        Raises:
            StorageError: On a duplicate ``(source_id, chunk_index)``.
        """
        created_at = _now()
        ids: list[int] = []
        for chunk in chunks:
            cursor = self._write(
                """
                INSERT INTO session_chunks
                    (source_id, chunk_index, timestamp, speakers, topic_tags, has_decision,
                     has_action, content, context_content, context_prefix, context_status,
                     token_count, embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk.source_id,
                    chunk.chunk_index,
                    chunk.timestamp,
                    json.dumps(chunk.speakers),
                    json.dumps(chunk.topic_tags),
                    int(chunk.has_decision),
                    int(chunk.has_action),
                    chunk.content,
                    chunk.context_content,
                    chunk.context_prefix,
                    str(chunk.context_status),
                    chunk.token_count,
                    encode_embedding(chunk.embedding) if chunk.embedding is not None else None,
                    created_at,
                ),
            )
            chunk_id = cursor.lastrowid
            if chunk_id is None:
                raise StorageError(f"No row id returned for {chunk.source_id}#{chunk.chunk_index}")
            chunk.id = chunk_id
            self._write(
                "INSERT INTO session_chunks_fts (rowid, content) VALUES (?, ?)",
                (chunk_id, chunk.content),
            )
            ids.append(chunk_id)
        return ids

    def get_chunks(self, source_id: str) -> list[SessionChunk]:
        rows = self._query(
            "SELECT * FROM session_chunks WHERE source_id = ? ORDER BY chunk_index",
            (source_id,),
        )
        return [_row_to_chunk(row) for row in rows]

    def chunks_pending_embedding(self, source_id: str | None = None) -> list[SessionChunk]:
        sql = "SELECT * FROM session_chunks WHERE embedding IS NULL"
        params: list[Any] = []
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        sql += " ORDER BY source_id, chunk_index"
        return [_row_to_chunk(row) for row in self._query(sql, params)]

    def chunks_missing_context(self, limit: int) -> list[SessionChunk]:
        rows = self._query(
            "SELECT * FROM session_chunks WHERE context_prefix IS NULL "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_chunk(row) for row in rows]

    def update_context(
        self,
        chunk_id: int,
        context_prefix: str | None,
        status: ContextStatus,
        invalidate_embedding: bool = False,
    ) -> None:
        """Replace a chunk's context; optionally drop its now-stale embedding."""
        self._write(
            "UPDATE session_chunks SET context_prefix = ?, context_status = ? WHERE id = ?",
            (context_prefix, str(status), chunk_id),
        )
        if invalidate_embedding:
            self.clear_embeddings([chunk_id])

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def store_embedding(self, chunk_id: int, embedding: Sequence[float]) -> None:
        """Persist a vector on the chunk row and mirror it into the vector index."""
        blob = encode_embedding(embedding)
        self._write("UPDATE session_chunks SET embedding = ? WHERE id = ?", (blob, chunk_id))
        if not self.vector_index_enabled:
            return
        try:
            self._conn.execute("DELETE FROM session_embeddings WHERE chunk_id = ?", (chunk_id,))
            self._conn.execute(
                "INSERT INTO session_embeddings (chunk_id, embedding) VALUES (?, ?)",
                (chunk_id, blob),
            )
        except sqlite3.OperationalError as exc:
            logger.warning("Could not index embedding for chunk %d: %s", chunk_id, exc)

    def clear_embeddings(self, chunk_ids: Sequence[int]) -> None:
        if not chunk_ids:
            return
        placeholders = ", ".join("?" for _ in chunk_ids)
        self._write(
            f"UPDATE session_chunks SET embedding = NULL WHERE id IN ({placeholders})",
            list(chunk_ids),
        )
        if self.vector_index_enabled:
            try:
                self._conn.execute(
                    f"DELETE FROM session_embeddings WHERE chunk_id IN ({placeholders})",
                    list(chunk_ids),
                )
            except sqlite3.OperationalError as exc:
                logger.warning("Could not clear vector index rows: %s", exc)

    def count_embedded(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM session_chunks WHERE embedding IS NOT NULL") or 0

    def count_pending_embeddings(self, source_id: str | None = None) -> int:
        if source_id is None:
            return self._scalar("SELECT COUNT(*) FROM session_chunks WHERE embedding IS NULL") or 0
        return (
            self._scalar(
                "SELECT COUNT(*) FROM session_chunks WHERE embedding IS NULL AND source_id = ?",
                (source_id,),
            )
            or 0
        )

    def pending_embeddings_by_source(self) -> list[tuple[str, int]]:
        rows = self._query(
            """
            SELECT source_id, COUNT(*) AS pending
            FROM session_chunks
            WHERE embedding IS NULL
            GROUP BY source_id
            ORDER BY pending DESC, source_id
            """
        )
        return [(row["source_id"], row["pending"]) for row in rows]

    def count_sources_with_embeddings(self) -> int:
        return (
            self._scalar(
                "SELECT COUNT(DISTINCT source_id) FROM session_chunks WHERE embedding IS NOT NULL"
            )
            or 0
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def embedded_chunks(self, filters: SearchFilters | None = None) -> list[SessionChunk]:
        """All chunks with a stored embedding that match *filters*."""
        clauses, params = _filter_clauses(filters)
        clauses.insert(0, "sc.embedding IS NOT NULL")
        rows = self._query(
            f"SELECT sc.* FROM session_chunks sc WHERE {' AND '.join(clauses)} ORDER BY sc.id",
            params,
        )
        return [_row_to_chunk(row) for row in rows]

    def lexical_search(
        self,
        fts_query: str,
        filters: SearchFilters | None = None,
        limit: int = 100,
    ) -> list[tuple[SessionChunk, float]]:
        """Run an FTS5 query; returns ``(chunk, bm25)`` pairs, best match first.

        FTS5's ``bm25()`` is negative and lower is better.
        """
        clauses, params = _filter_clauses(filters)
        where = "session_chunks_fts MATCH ?"
        if clauses:
            where += " AND " + " AND ".join(clauses)
        rows = self._query(
            f"""
            SELECT sc.*, bm25(session_chunks_fts) AS lexical_rank
            FROM session_chunks_fts
            JOIN session_chunks sc ON sc.id = session_chunks_fts.rowid
            WHERE {where}
            ORDER BY lexical_rank, sc.id
            LIMIT ?
            """,
            [fts_query, *params, limit],
        )
        return [(_row_to_chunk(row), float(row["lexical_rank"])) for row in rows]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> StoreStats:
        stats = StoreStats(
            total_chunks=self.count_chunks(),
            total_sources=self._scalar("SELECT COUNT(DISTINCT source_id) FROM session_chunks") or 0,
            indexed_sources=self._scalar("SELECT COUNT(*) FROM source_index_state") or 0,
            failed_sources=self._scalar(
                "SELECT COUNT(*) FROM source_index_state WHERE status = ?",
                (str(SourceStatus.FAILED),),
            )
            or 0,
            embedded_chunks=self.count_embedded(),
            avg_tokens=float(self._scalar("SELECT AVG(token_count) FROM session_chunks") or 0.0),
            recent_chunks=self._scalar(
                "SELECT COUNT(*) FROM session_chunks WHERE created_at > ?",
                (format_timestamp(datetime.now(UTC) - timedelta(hours=24)),),
            )
            or 0,
            last_indexed=self._scalar("SELECT MAX(last_indexed) FROM source_index_state"),
        )
        for row in self._query(
            "SELECT context_status, COUNT(*) AS n FROM session_chunks GROUP BY context_status"
        ):
            if row["context_status"] == ContextStatus.COMPLETE:
                stats.context_complete = row["n"]
            elif row["context_status"] == ContextStatus.FAILED:
                stats.context_failed = row["n"]
            else:
                stats.context_pending += row["n"]
        return stats


def _filter_clauses(filters: SearchFilters | None) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters is None:
        return clauses, params
    if filters.after:
        clauses.append("sc.timestamp >= ?")
        params.append(filters.after)
    if filters.before:
        clauses.append("sc.timestamp <= ?")
        params.append(filters.before)
    if filters.topic:
        clauses.append("EXISTS (SELECT 1 FROM json_each(sc.topic_tags) WHERE json_each.value = ?)")
        params.append(filters.topic)
    return clauses, params


def _row_to_chunk(row: sqlite3.Row) -> SessionChunk:
    blob = row["embedding"]
    return SessionChunk(
        id=row["id"],
        source_id=row["source_id"],
        chunk_index=row["chunk_index"],
        timestamp=row["timestamp"],
        content=row["content"],
        speakers=json.loads(row["speakers"] or "[]"),
        topic_tags=json.loads(row["topic_tags"] or "[]"),
        has_decision=bool(row["has_decision"]),
        has_action=bool(row["has_action"]),
        context_content=row["context_content"],
        context_prefix=row["context_prefix"],
        context_status=ContextStatus(row["context_status"] or ContextStatus.PENDING),
        token_count=row["token_count"] or 0,
        embedding=decode_embedding(blob) if blob is not None else None,
    )


def open_store(settings: Settings, initialize: bool = True) -> SessionStore:
    """Open the store configured in *settings*."""
    return SessionStore(
        settings.database_path,
        embedding_dimensions=settings.embedding_dimensions,
        use_vector_index=settings.use_vector_index,
        initialize=initialize,
    )
