"""
SQLite vector store backed by the sqlite-vec extension.

One database file holds two logical tables:

- ``chunks``: chunk metadata (source path, content, fingerprint, created-at)
  and ``vec_rowid``, the row of its embedding in ``vec_chunks``
- ``vec_chunks``: a ``vec0`` virtual table of fixed-dimension float32 vectors

A chunk owns zero or one vector row. Inserts and deletes touch both tables
inside one transaction, so no vector is orphaned and no ``vec_rowid``
dangles. The vector row id is the id of the chunk that owns it.

``rag_meta`` records the embedding dimension the index was created with;
opening the file with a different dimension is refused.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Set

import numpy as np
import sqlite_vec

from sqlite_rag.config import RagError, RagSettings, ensure_rag_dir
from sqlite_rag.models import ContextChunk

LOG = logging.getLogger("sqlite_rag.vector_store")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_path TEXT NOT NULL,
    content TEXT NOT NULL,
    hash TEXT NOT NULL,
    vec_rowid INTEGER,
    created_at INTEGER NOT NULL,
    UNIQUE(file_path, hash)
);

CREATE TABLE IF NOT EXISTS rag_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_path ON chunks(file_path);
CREATE INDEX IF NOT EXISTS idx_hash ON chunks(hash);
CREATE INDEX IF NOT EXISTS idx_vec_rowid ON chunks(vec_rowid);
"""


class StorageError(RagError):
    """The vector store could not be opened or used."""


@dataclass
class Chunk:
    """A span of document text stored and embedded as one retrieval unit."""

    source_path: str
    content: str
    fingerprint: str
    embedding: Optional[np.ndarray] = None
    vector_ref: Optional[int] = None
    created_at: Optional[int] = None
    id: Optional[int] = None


def serialize_vector(vector: Sequence[float], dimension: int) -> bytes:
    """Little-endian float32 blob, the layout vec0 expects."""
    arr = np.asarray(vector, dtype="<f4").reshape(-1)
    if arr.shape[0] != dimension:
        raise ValueError(f"Embedding has {arr.shape[0]} dimensions, index expects {dimension}")
    return arr.tobytes()


class SQLiteVecStore:
    """
    Chunk + vector persistence with cosine nearest-neighbor search.

    Usage::

        with SQLiteVecStore(Path(".rag/sqlite.db"), dimension=1536) as store:
            store.insert_many(chunks)
            hits = store.search(query_vector, k=5)
    """

    def __init__(self, db_path: Path, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._db_path = Path(db_path)
        self._dimension = dimension
        self._conn: Optional[sqlite3.Connection] = None

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), isolation_level=None)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot open vector store at {self._db_path}: {exc}") from exc

        try:
            self._load_extension()
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except Exception:
            self._conn.close()
            self._conn = None
            raise

        LOG.debug("Opened vector store %s (dimension=%d)", self._db_path, dimension)

    @classmethod
    def open(cls, settings: RagSettings, db_path: Optional[Path] = None) -> "SQLiteVecStore":
        """Open the store at ``db_path`` (default: ``settings.db_path``) sized for the configured model."""
        path = Path(db_path) if db_path else settings.db_path
        try:
            ensure_rag_dir(path, settings.project_root)
        except OSError as exc:
            raise StorageError(f"Cannot prepare directory for {path}: {exc}") from exc
        return cls(path, settings.embedding_dimension)

    def _load_extension(self) -> None:
        try:
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot load the sqlite-vec extension: {exc}") from exc

    def _init_schema(self) -> None:
        """Create tables and indexes (idempotent) and check the recorded dimension."""
        try:
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS vec_chunks USING vec0(embedding float[{self._dimension}])"
            )
            row = self._conn.execute("SELECT value FROM rag_meta WHERE key = 'embedding_dimension'").fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO rag_meta (key, value) VALUES ('embedding_dimension', ?)",
                    (str(self._dimension),),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot initialize schema in {self._db_path}: {exc}") from exc

        if row is not None and int(row[0]) != self._dimension:
            raise StorageError(
                f"Index at {self._db_path} was built with {row[0]}-dimensional embeddings; "
                f"the configured model produces {self._dimension}. Rebuild the index or switch models."
            )

    # ── Plumbing ──────────────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Vector store is closed")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one transaction; roll back everything on any error."""
        conn = self._db()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageError(f"Write to {self._db_path} failed and was rolled back: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        # Some errors already make SQLite abort the transaction itself
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @staticmethod
    def _delete_vectors(conn: sqlite3.Connection, vec_rowids: List[int]) -> None:
        conn.executemany("DELETE FROM vec_chunks WHERE rowid = ?", [(rowid,) for rowid in vec_rowids])

    def _write_chunk(self, conn: sqlite3.Connection, chunk: Chunk) -> int:
        # Replacing (file_path, hash) must not leak the previous vector row
        rows = conn.execute(
            "SELECT vec_rowid FROM chunks WHERE file_path = ? AND hash = ? AND vec_rowid IS NOT NULL",
            (chunk.source_path, chunk.fingerprint),
        ).fetchall()
        self._delete_vectors(conn, [row[0] for row in rows])

        blob = serialize_vector(chunk.embedding, self._dimension) if chunk.embedding is not None else None
        created_at = int(time.time() * 1000)
        cur = conn.execute(
            "INSERT OR REPLACE INTO chunks (file_path, content, hash, vec_rowid, created_at) "
            "VALUES (?, ?, ?, NULL, ?)",
            (chunk.source_path, chunk.content, chunk.fingerprint, created_at),
        )
        chunk_id = cur.lastrowid

        vector_ref = None
        if blob is not None:
            conn.execute("INSERT INTO vec_chunks (rowid, embedding) VALUES (?, ?)", (chunk_id, blob))
            conn.execute("UPDATE chunks SET vec_rowid = ? WHERE id = ?", (chunk_id, chunk_id))
            vector_ref = chunk_id

        chunk.id = chunk_id
        chunk.vector_ref = vector_ref
        chunk.created_at = created_at
        return chunk_id

    # ── Writes ────────────────────────────────────────────────────────

    def insert_one(self, chunk: Chunk) -> int:
        """Insert or replace a chunk (and its vector). Returns the chunk id."""
        with self._transaction() as conn:
            return self._write_chunk(conn, chunk)

    def insert_many(self, chunks: Iterable[Chunk]) -> int:
        """
        Insert chunks as one atomic unit.

        Either every chunk becomes visible or, if any insert fails, none do
        and the error propagates. Returns the number of chunks written.
        """
        written = 0
        with self._transaction() as conn:
            for chunk in chunks:
                self._write_chunk(conn, chunk)
                written += 1
        return written

    def delete_by_source(self, source_path: str) -> int:
        """Remove every chunk of ``source_path`` and their vectors. Returns chunks removed."""
        with self._transaction() as conn:
            removed = self._delete_source(conn, source_path)
        LOG.debug("Deleted %d chunks for %s", removed, source_path)
        return removed

    def _delete_source(self, conn: sqlite3.Connection, source_path: str) -> int:
        rows = conn.execute(
            "SELECT vec_rowid FROM chunks WHERE file_path = ? AND vec_rowid IS NOT NULL",
            (source_path,),
        ).fetchall()
        self._delete_vectors(conn, [row[0] for row in rows])
        return conn.execute("DELETE FROM chunks WHERE file_path = ?", (source_path,)).rowcount

    def replace_source(self, source_path: str, chunks: Iterable[Chunk]) -> int:
        """
        Swap every chunk of ``source_path`` for ``chunks`` in one transaction.

        Old chunks are deleted before the new ones are inserted; readers see
        either the old set or the new one. Returns the number of chunks written.
        """
        written = 0
        with self._transaction() as conn:
            self._delete_source(conn, source_path)
            for chunk in chunks:
                if chunk.source_path != source_path:
                    raise ValueError(f"Chunk for {chunk.source_path!r} passed to replace_source({source_path!r})")
                self._write_chunk(conn, chunk)
                written += 1
        return written

    # ── Reads ─────────────────────────────────────────────────────────

    def exists(self, source_path: str) -> bool:
        row = self._db().execute("SELECT 1 FROM chunks WHERE file_path = ? LIMIT 1", (source_path,)).fetchone()
        return row is not None

    def list_sources(self) -> Set[str]:
        rows = self._db().execute("SELECT DISTINCT file_path FROM chunks").fetchall()
        return {row[0] for row in rows}

    def fingerprints(self, source_path: str) -> Set[str]:
        rows = self._db().execute("SELECT hash FROM chunks WHERE file_path = ?", (source_path,)).fetchall()
        return {row[0] for row in rows}

    def count(self) -> int:
        return self._db().execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def vector_count(self) -> int:
        return self._db().execute("SELECT COUNT(*) FROM vec_chunks").fetchone()[0]

    def search(self, query_vector: Sequence[float], k: int = 5) -> List[ContextChunk]:
        """
        Rank stored vectors by cosine distance to ``query_vector``.

        Returns at most ``k`` chunks, closest first (ties in storage order),
        with ``similarity = 1 - cosine_distance``.
        """
        conn = self._db()
        if k <= 0:
            return []
        blob = serialize_vector(query_vector, self._dimension)
        rows = conn.execute(
            "SELECT c.content, c.file_path, vec_distance_cosine(v.embedding, ?) AS distance "
            "FROM vec_chunks v "
            "JOIN chunks c ON v.rowid = c.vec_rowid "
            "ORDER BY distance ASC, v.rowid ASC "
            "LIMIT ?",
            (blob, k),
        ).fetchall()
        return [
            ContextChunk(content=content, file_path=file_path, similarity=1.0 - distance)
            for content, file_path, distance in rows
        ]

    # ── Lifecycle ─────────────────────────────────────────────────────

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SQLiteVecStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
