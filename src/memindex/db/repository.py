"""Repository for all memory index database operations.

Single interface for: documents, chunks, FTS5 / LIKE keyword search, vec
embeddings, the embedding cache, and index metadata. Vec tables are
model-managed (ensure_vec_table); the repository handles read + write.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from memindex.db.models import Chunk, Document
from memindex.db.vectors import list_vec_tables
from memindex.errors import StoreError

_CHUNK_COLUMNS = (
    "id, path, chunk_index, start_line, end_line, hash, model, text, embedding, created_at"
)
_FTS_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class Repository:
    """Data access layer for the memory index.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        fts_available: bool = True,
    ) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see memindex.db.migrations.initialize).
            fts_available: Whether the chunks_fts table exists.
        """
        self._conn = conn
        self.fts_available = fts_available

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back and raise StoreError on SQLite failure."""
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as exc:
            raise StoreError(f"Index write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_document(self, path: str) -> Document | None:
        row = self._conn.execute(
            "SELECT path, digest, mtime_ms, size, indexed_at FROM documents WHERE path = ?",
            (path,),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self) -> list[Document]:
        """Return all indexed documents ordered by path."""
        rows = self._conn.execute(
            "SELECT path, digest, mtime_ms, size, indexed_at FROM documents ORDER BY path"
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def count_documents(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def delete_document(self, path: str) -> None:
        """Delete a document with its chunks, FTS rows and vec rows."""
        with self._transaction() as conn:
            self._delete_chunk_rows(conn, path)
            conn.execute("DELETE FROM documents WHERE path = ?", (path,))

    def replace_document(
        self,
        document: Document,
        chunks: list[Chunk],
        vec_table: str | None = None,
    ) -> list[int]:
        """Atomically swap a document's chunks for *chunks*.

        Old chunk / FTS / vec rows are removed, the new ones inserted and the
        document digest updated in one transaction. On failure nothing
        changes and StoreError is raised.

        Returns:
            The new chunk ids, in chunk order.
        """
        ids: list[int] = []
        with self._transaction() as conn:
            self._delete_chunk_rows(conn, document.path)
            conn.execute(
                """
                INSERT INTO documents (path, digest, mtime_ms, size)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    digest = excluded.digest,
                    mtime_ms = excluded.mtime_ms,
                    size = excluded.size,
                    indexed_at = datetime('now')
                """,
                (document.path, document.digest, document.mtime_ms, document.size),
            )
            for chunk in chunks:
                cur = conn.execute(
                    """
                    INSERT INTO chunks
                        (path, chunk_index, start_line, end_line, hash, model, text, embedding)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document.path,
                        chunk.chunk_index,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model,
                        chunk.text,
                        chunk.embedding_json,
                    ),
                )
                rowid = cur.lastrowid
                chunk.id = rowid
                ids.append(rowid)
                # Keep FTS5 in sync with explicit rowid mapping
                if self.fts_available:
                    conn.execute(
                        "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (rowid, chunk.text)
                    )
                if vec_table and chunk.embedding:
                    conn.execute(
                        f"INSERT INTO {vec_table}(rowid, embedding) VALUES (?, ?)",
                        (rowid, chunk.embedding_json),
                    )
        return ids

    def clear_embeddings(self) -> None:
        """Invalidate every stored embedding and mark all documents for reindexing.

        Chunk text stays searchable by keyword until the documents are
        re-embedded. The embedding cache is kept; it is keyed by model.
        """
        with self._transaction() as conn:
            for table in list_vec_tables(conn):
                conn.execute(f"DELETE FROM [{table}]")  # noqa: S608
            conn.execute("UPDATE chunks SET embedding = '[]', model = ''")
            conn.execute("UPDATE documents SET digest = ''")

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks(self, path: str) -> list[Chunk]:
        """Return a document's chunks in chunk order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE path = ? ORDER BY chunk_index",
            (path,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def _delete_chunk_rows(self, conn: sqlite3.Connection, path: str) -> None:
        """Delete chunks + FTS + vec entries for a document (cascade not available on virtual tables)."""
        rowids = [
            r[0] for r in conn.execute("SELECT id FROM chunks WHERE path = ?", (path,)).fetchall()
        ]
        if rowids:
            placeholders = ",".join("?" * len(rowids))
            if self.fts_available:
                conn.execute(f"DELETE FROM chunks_fts WHERE rowid IN ({placeholders})", rowids)
            for table in list_vec_tables(conn):
                conn.execute(
                    f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                    rowids,
                )
        conn.execute("DELETE FROM chunks WHERE path = ?", (path,))

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def search_vec(
        self, table: str, embedding: list[float], limit: int = 10
    ) -> list[tuple[Chunk, float]]:
        """Nearest-neighbour search. Returns (chunk, cosine distance) sorted by distance."""
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? ORDER BY distance LIMIT ?",
            (json.dumps(embedding), limit),
        ).fetchall()

        results: list[tuple[Chunk, float]] = []
        for vec_row in vec_rows:
            chunk = self.get_chunk(vec_row["rowid"])
            if chunk is not None:
                results.append((chunk, vec_row["distance"]))
        return results

    # ------------------------------------------------------------------
    # Keyword search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 10) -> list[tuple[Chunk, float]]:
        """BM25 full-text search. Returns (chunk, score) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        Falls back to search_like() when FTS5 is unavailable.
        """
        if not self.fts_available:
            return self.search_like(query, limit)

        fts_query = build_fts_query(query)
        if fts_query is None:
            return []
        fts_rows = self._conn.execute(
            "SELECT rowid, bm25(chunks_fts) AS score FROM chunks_fts WHERE text MATCH ? ORDER BY score LIMIT ?",
            (fts_query, limit),
        ).fetchall()

        results: list[tuple[Chunk, float]] = []
        for fts_row in fts_rows:
            chunk = self.get_chunk(fts_row["rowid"])
            if chunk is not None:
                results.append((chunk, fts_row["score"]))
        return results

    def search_like(self, query: str, limit: int = 10) -> list[tuple[Chunk, float]]:
        """Substring search used when FTS5 is missing.

        The score is the negated number of query tokens found, so it sorts
        like bm25 (more negative = better).
        """
        tokens = [t.lower() for t in _FTS_TOKEN_RE.findall(query)]
        if not tokens:
            return []
        where = " OR ".join("lower(text) LIKE ?" for _ in tokens)
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE {where}",  # noqa: S608
            [f"%{t}%" for t in tokens],
        ).fetchall()
        scored: list[tuple[Chunk, float]] = []
        for row in rows:
            text = row["text"].lower()
            hits = sum(1 for t in tokens if t in text)
            scored.append((_row_to_chunk(row), -float(hits)))
        scored.sort(key=lambda item: item[1])
        return scored[:limit]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def get_cached_embeddings(self, model: str, hashes: Iterable[str]) -> dict[str, list[float]]:
        """Return {chunk hash: embedding} for the hashes already embedded with *model*."""
        wanted = list(dict.fromkeys(hashes))
        found: dict[str, list[float]] = {}
        # Stay under SQLITE_MAX_VARIABLE_NUMBER on older builds.
        for start in range(0, len(wanted), 500):
            batch = wanted[start : start + 500]
            placeholders = ",".join("?" * len(batch))
            rows = self._conn.execute(
                f"SELECT hash, embedding FROM embedding_cache WHERE model = ? AND hash IN ({placeholders})",
                [model, *batch],
            ).fetchall()
            for row in rows:
                found[row["hash"]] = json.loads(row["embedding"])
        return found

    def put_cached_embeddings(self, model: str, entries: dict[str, list[float]]) -> None:
        if not entries:
            return
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO embedding_cache (model, hash, embedding, dims)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(model, hash) DO UPDATE SET
                    embedding = excluded.embedding,
                    dims = excluded.dims,
                    updated_at = datetime('now')
                """,
                [(model, h, json.dumps(vec), len(vec)) for h, vec in entries.items()],
            )

    def count_cached_embeddings(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

    def prune_embedding_cache(self, max_entries: int) -> int:
        """Delete the oldest cache rows beyond *max_entries*. Returns rows deleted."""
        excess = self.count_cached_embeddings() - max_entries
        if excess <= 0:
            return 0
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM embedding_cache WHERE rowid IN (
                    SELECT rowid FROM embedding_cache ORDER BY updated_at ASC, rowid ASC LIMIT ?
                )
                """,
                (excess,),
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def delete_meta(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM meta WHERE key = ?", (key,))


def build_fts_query(raw: str) -> str | None:
    """Turn free text into an FTS5 MATCH expression of quoted AND-ed tokens.

    FTS5 MATCH rejects punctuation as syntax; quoting each token avoids that.
    Returns None when *raw* has no searchable tokens.
    """
    tokens = _FTS_TOKEN_RE.findall(raw)
    if not tokens:
        return None
    return " AND ".join(f'"{t}"' for t in tokens)


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        path=row["path"],
        digest=row["digest"],
        mtime_ms=row["mtime_ms"],
        size=row["size"],
        indexed_at=row["indexed_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        path=row["path"],
        chunk_index=row["chunk_index"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        hash=row["hash"],
        model=row["model"],
        text=row["text"],
        embedding=json.loads(row["embedding"]),
        created_at=row["created_at"],
    )
