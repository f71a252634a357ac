"""SQLite store for helpcenter-kb.

Relational state (sources, articles, chunks) lives in ordinary tables; chunk
vectors live in a sqlite-vec ``vec0`` table whose rowid is the chunk id. The
two are always written and deleted together, inside the same transaction.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import sqlite_vec

from helpcenter_kb.errors import StorageError
from helpcenter_kb.indexer.models import (
    ArticleDiff,
    ArticleRecord,
    ArticleSummary,
    ChunkRecord,
    CommitSummary,
    PreparedArticle,
    SimilarChunk,
    SourceRecord,
    SourceStats,
)

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 768
# With a source filter, KNN runs before the join; fetch extra candidates so
# filtering still leaves up to ``limit`` rows.
FILTERED_CANDIDATE_FACTOR = 5

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kb_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    base_url TEXT NOT NULL,
    locale TEXT NOT NULL,
    last_synced_at TEXT,
    enabled INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS articles (
    id INTEGER NOT NULL,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    section_name TEXT,
    category_name TEXT,
    updated_at TEXT NOT NULL,
    synced_at TEXT NOT NULL,
    PRIMARY KEY (id, source_id),
    FOREIGN KEY (source_id) REFERENCES sources(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id INTEGER NOT NULL,
    source_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    token_count INTEGER,
    FOREIGN KEY (article_id, source_id) REFERENCES articles(id, source_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source_id);
CREATE INDEX IF NOT EXISTS idx_chunks_article ON chunks(article_id, source_id);
CREATE INDEX IF NOT EXISTS idx_articles_updated ON articles(source_id, updated_at);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """float32 little-endian blob, the layout vec0 expects."""
    return np.asarray(embedding, dtype='<f4').tobytes()


def diff_articles(existing: Dict[int, datetime],
                  fresh: Iterable[ArticleSummary],
                  full_resync: bool = False) -> ArticleDiff:
    """Compare a fresh listing against stored update times.

    A fetched article is reprocessed when it is not stored yet, when its origin
    timestamp is strictly newer than the stored one, or always under
    ``full_resync``. Stored articles missing from the listing are deleted.
    """
    diff = ArticleDiff()
    remaining = dict(existing)

    for summary in fresh:
        stored = remaining.pop(summary.id, None)
        if full_resync or stored is None or summary.updated_at > stored:
            diff.to_process.add(summary.id)

    diff.to_delete.update(remaining.keys())
    return diff


class KnowledgeBaseStore:
    """SQLite + sqlite-vec store with an explicit open/close lifecycle.

    One instance holds one connection; create it once and hand it to the
    sync coordinator and the search engine. Writers must be serialized by the
    caller: a single sync process at a time.
    """

    def __init__(self, db_path: str, dimension: int = DEFAULT_DIMENSION):
        self.db_path = str(db_path)
        self.dimension = dimension
        self.conn: Optional[sqlite3.Connection] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:" or self.db_path.startswith("file::memory:")

    async def initialize(self):
        """Open the connection, load sqlite-vec and ensure the schema exists."""
        if self.conn is not None:
            return

        if not self.is_memory:
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)

        # Autocommit mode; multi-statement writes use explicit BEGIN/COMMIT.
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            conn.close()
            raise StorageError(
                f"Failed to load the sqlite-vec extension: {e}\n\n"
                f"Your Python's sqlite3 module must support loadable extensions."
            ) from e

        try:
            conn.execute("PRAGMA foreign_keys = ON")
            if not self.is_memory:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.executescript(SCHEMA_SQL)
            conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS chunks_vec USING vec0("
                f"embedding float[{int(self.dimension)}] distance_metric=cosine)"
            )
            self._check_dimension(conn)
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Failed to initialize database schema at {self.db_path}: {e}") from e
        except StorageError:
            conn.close()
            raise

        self.conn = conn
        logger.info(f"Store initialized: {self.db_path}")

    def _check_dimension(self, conn: sqlite3.Connection):
        row = conn.execute("SELECT value FROM kb_meta WHERE key = 'embedding_dimension'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO kb_meta (key, value) VALUES ('embedding_dimension', ?)",
                (str(self.dimension),),
            )
        elif int(row["value"]) != self.dimension:
            raise StorageError(
                f"Database at {self.db_path} holds {row['value']}-dimension embeddings, "
                f"but {self.dimension} is configured. Use a matching model or a fresh database."
            )

    async def close(self):
        """Close the connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Store connection closed")

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError("Store is not initialized. Call initialize() first.")
        return self.conn

    @contextmanager
    def _statement(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run single statements, reporting driver errors as StorageError."""
        conn = self._require_conn()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._require_conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # Sources

    @staticmethod
    def _source_from_row(row: sqlite3.Row) -> SourceRecord:
        return SourceRecord(
            id=row["id"],
            name=row["name"],
            base_url=row["base_url"],
            locale=row["locale"],
            enabled=bool(row["enabled"]),
            last_synced_at=_from_text(row["last_synced_at"]),
        )

    async def upsert_source(self, source) -> None:
        """Insert or update a source's descriptive fields; ``last_synced_at`` is kept."""
        with self._statement(f"register source {source.id}") as conn:
            conn.execute(
                """
                INSERT INTO sources (id, name, base_url, locale, enabled)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    base_url = excluded.base_url,
                    locale = excluded.locale,
                    enabled = excluded.enabled
                """,
                (source.id, source.name, source.base_url, source.locale, 1 if source.enabled else 0),
            )

    async def get_source(self, source_id: str) -> Optional[SourceRecord]:
        with self._statement(f"read source {source_id}") as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return self._source_from_row(row) if row else None

    async def list_sources(self) -> List[SourceRecord]:
        with self._statement("list sources") as conn:
            rows = conn.execute("SELECT * FROM sources ORDER BY name").fetchall()
        return [self._source_from_row(row) for row in rows]

    async def list_enabled_sources(self) -> List[SourceRecord]:
        with self._statement("list enabled sources") as conn:
            rows = conn.execute("SELECT * FROM sources WHERE enabled = 1 ORDER BY name").fetchall()
        return [self._source_from_row(row) for row in rows]

    async def set_source_enabled(self, source_id: str, enabled: bool) -> None:
        with self._statement(f"update source {source_id}") as conn:
            conn.execute(
                "UPDATE sources SET enabled = ? WHERE id = ?", (1 if enabled else 0, source_id)
            )

    async def get_sources_with_stats(self) -> List[SourceStats]:
        with self._statement("read source statistics") as conn:
            rows = conn.execute(
                """
                SELECT s.*,
                       (SELECT COUNT(*) FROM articles a WHERE a.source_id = s.id) AS article_count,
                       (SELECT COUNT(*) FROM chunks c WHERE c.source_id = s.id) AS chunk_count
                FROM sources s
                ORDER BY s.name
                """
            ).fetchall()
        return [
            SourceStats(
                source=self._source_from_row(row),
                article_count=row["article_count"],
                chunk_count=row["chunk_count"],
            )
            for row in rows
        ]

    async def delete_source(self, source_id: str) -> bool:
        """Delete a source with all of its articles, chunks and vectors."""
        try:
            with self._transaction() as conn:
                self._delete_vectors(conn, "SELECT id FROM chunks WHERE source_id = ?", (source_id,))
                cursor = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete source {source_id}: {e}") from e

        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted source {source_id} and its indexed content")
        return deleted

    # Articles and chunks

    @staticmethod
    def _article_from_row(row: sqlite3.Row) -> ArticleRecord:
        return ArticleRecord(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            url=row["url"],
            section_name=row["section_name"],
            category_name=row["category_name"],
            updated_at=_from_text(row["updated_at"]),
            synced_at=_from_text(row["synced_at"]),
        )

    async def get_article(self, article_id: int, source_id: str) -> Optional[ArticleRecord]:
        with self._statement(f"read article {article_id}") as conn:
            row = conn.execute(
                "SELECT * FROM articles WHERE id = ? AND source_id = ?", (article_id, source_id)
            ).fetchone()
        return self._article_from_row(row) if row else None

    async def get_articles_by_source(self, source_id: str) -> List[ArticleRecord]:
        with self._statement(f"list articles of {source_id}") as conn:
            rows = conn.execute(
                "SELECT * FROM articles WHERE source_id = ? ORDER BY updated_at DESC", (source_id,)
            ).fetchall()
        return [self._article_from_row(row) for row in rows]

    async def get_chunks_by_article(self, article_id: int, source_id: str) -> List[ChunkRecord]:
        with self._statement(f"read chunks of article {article_id}") as conn:
            rows = conn.execute(
                """
                SELECT * FROM chunks
                WHERE article_id = ? AND source_id = ?
                ORDER BY chunk_index
                """,
                (article_id, source_id),
            ).fetchall()
        return [
            ChunkRecord(
                id=row["id"],
                article_id=row["article_id"],
                source_id=row["source_id"],
                chunk_index=row["chunk_index"],
                text=row["text"],
                token_count=row["token_count"],
            )
            for row in rows
        ]

    async def get_article_timestamps(self, source_id: str) -> Dict[int, datetime]:
        with self._statement(f"read article timestamps of {source_id}") as conn:
            rows = conn.execute(
                "SELECT id, updated_at FROM articles WHERE source_id = ?", (source_id,)
            ).fetchall()
        return {row["id"]: _from_text(row["updated_at"]) for row in rows}

    async def get_stale_articles(self, source_id: str, fresh: Iterable[ArticleSummary],
                                 full_resync: bool = False) -> ArticleDiff:
        """Diff a freshly fetched listing against what is stored for the source."""
        existing = await self.get_article_timestamps(source_id)
        return diff_articles(existing, fresh, full_resync=full_resync)

    def _delete_vectors(self, conn: sqlite3.Connection, id_query: str, params: tuple):
        chunk_ids = [row[0] for row in conn.execute(id_query, params).fetchall()]
        if chunk_ids:
            conn.executemany("DELETE FROM chunks_vec WHERE rowid = ?", [(cid,) for cid in chunk_ids])

    def _delete_article_chunks(self, conn: sqlite3.Connection, article_id: int, source_id: str):
        self._delete_vectors(
            conn,
            "SELECT id FROM chunks WHERE article_id = ? AND source_id = ?",
            (article_id, source_id),
        )
        conn.execute("DELETE FROM chunks WHERE article_id = ? AND source_id = ?", (article_id, source_id))

    def _delete_article(self, conn: sqlite3.Connection, article_id: int, source_id: str):
        # Chunk rows would cascade, their vectors would not.
        self._delete_article_chunks(conn, article_id, source_id)
        conn.execute("DELETE FROM articles WHERE id = ? AND source_id = ?", (article_id, source_id))

    def _upsert_article(self, conn: sqlite3.Connection, source_id: str,
                        article: PreparedArticle, synced_at: datetime):
        conn.execute(
            """
            INSERT INTO articles (id, source_id, title, url, section_name, category_name, updated_at, synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id, source_id) DO UPDATE SET
                title = excluded.title,
                url = excluded.url,
                section_name = excluded.section_name,
                category_name = excluded.category_name,
                updated_at = excluded.updated_at,
                synced_at = excluded.synced_at
            """,
            (
                article.id,
                source_id,
                article.title,
                article.url,
                article.section_name,
                article.category_name,
                _to_text(article.updated_at),
                _to_text(synced_at),
            ),
        )

    def _insert_chunks(self, conn: sqlite3.Connection, source_id: str, article: PreparedArticle) -> int:
        for chunk, embedding in zip(article.chunks, article.embeddings):
            if len(embedding) != self.dimension:
                raise StorageError(
                    f"Article {article.id} chunk {chunk.index}: expected {self.dimension}-dimension "
                    f"embedding, got {len(embedding)}"
                )
            cursor = conn.execute(
                """
                INSERT INTO chunks (article_id, source_id, chunk_index, text, token_count)
                VALUES (?, ?, ?, ?, ?)
                """,
                (article.id, source_id, chunk.index, chunk.text, chunk.token_count),
            )
            conn.execute(
                "INSERT INTO chunks_vec (rowid, embedding) VALUES (?, ?)",
                (cursor.lastrowid, serialize_embedding(embedding)),
            )
        return len(article.chunks)

    async def commit_source_sync(self, source_id: str,
                                 articles: Sequence[PreparedArticle],
                                 fresh_ids: Iterable[int]) -> CommitSummary:
        """Apply one source's sync pass in a single transaction.

        Every prepared article has its chunks and vectors deleted and replaced
        wholesale, articles no longer in ``fresh_ids`` are removed, and the
        source's ``last_synced_at`` is advanced as the last statement. Any
        failure rolls the whole pass back.
        """
        fresh = set(fresh_ids)
        summary = CommitSummary()
        now = _utcnow()

        try:
            with self._transaction() as conn:
                for article in articles:
                    self._delete_article_chunks(conn, article.id, source_id)
                    self._upsert_article(conn, source_id, article, now)
                    summary.chunks_created += self._insert_chunks(conn, source_id, article)
                    summary.articles_upserted += 1

                stored_ids = [
                    row[0] for row in
                    conn.execute("SELECT id FROM articles WHERE source_id = ?", (source_id,)).fetchall()
                ]
                for article_id in stored_ids:
                    if article_id not in fresh:
                        self._delete_article(conn, article_id, source_id)
                        summary.articles_deleted += 1

                cursor = conn.execute(
                    "UPDATE sources SET last_synced_at = ? WHERE id = ?", (_to_text(now), source_id)
                )
                if cursor.rowcount == 0:
                    raise StorageError(f"Source {source_id} is not registered in the store")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to store sync results for {source_id}: {e}") from e

        logger.debug(f"Committed {source_id}: {summary.articles_upserted} upserted, "
                     f"{summary.chunks_created} chunks, {summary.articles_deleted} deleted")
        return summary

    # Vector search

    async def search_similar_chunks(self, embedding: Sequence[float], limit: int = 5,
                                    source_ids: Optional[Sequence[str]] = None) -> List[SimilarChunk]:
        """k-nearest-neighbour lookup by cosine distance, ascending."""
        k = limit * FILTERED_CANDIDATE_FACTOR if source_ids else limit

        query = """
            SELECT
                cv.rowid AS chunk_id,
                c.article_id,
                c.source_id,
                c.text,
                a.title,
                a.url,
                cv.distance
            FROM chunks_vec cv
            INNER JOIN chunks c ON cv.rowid = c.id
            INNER JOIN articles a ON c.article_id = a.id AND c.source_id = a.source_id
            WHERE cv.embedding MATCH ? AND k = ?
        """
        params: list = [serialize_embedding(embedding), k]

        if source_ids:
            placeholders = ",".join("?" * len(source_ids))
            query += f" AND c.source_id IN ({placeholders})"
            params.extend(source_ids)

        query += " ORDER BY cv.distance"

        with self._statement("run vector search") as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            SimilarChunk(
                chunk_id=row["chunk_id"],
                article_id=row["article_id"],
                source_id=row["source_id"],
                title=row["title"],
                url=row["url"],
                text=row["text"],
                distance=float(row["distance"]),
            )
            for row in rows[:limit]
        ]

    # Statistics and integrity

    async def count_embeddings(self, source_id: Optional[str] = None,
                               article_id: Optional[int] = None) -> int:
        with self._statement("count embeddings") as conn:
            if source_id is None:
                return conn.execute("SELECT COUNT(*) FROM chunks_vec").fetchone()[0]

            query = "SELECT id FROM chunks WHERE source_id = ?"
            params: list = [source_id]
            if article_id is not None:
                query += " AND article_id = ?"
                params.append(article_id)
            chunk_ids = {row[0] for row in conn.execute(query, params).fetchall()}
            vector_ids = {row[0] for row in conn.execute("SELECT rowid FROM chunks_vec").fetchall()}
        return len(chunk_ids & vector_ids)

    async def find_unpaired(self) -> Dict[str, List[int]]:
        """Chunk ids without a vector, and vector rowids without a chunk."""
        with self._statement("check chunk/vector pairing") as conn:
            chunk_ids = {row[0] for row in conn.execute("SELECT id FROM chunks").fetchall()}
            vector_ids = {row[0] for row in conn.execute("SELECT rowid FROM chunks_vec").fetchall()}
        return {
            "chunks_without_vectors": sorted(chunk_ids - vector_ids),
            "vectors_without_chunks": sorted(vector_ids - chunk_ids),
        }

    async def vector_extension_version(self) -> str:
        with self._statement("query the sqlite-vec version") as conn:
            return conn.execute("SELECT vec_version()").fetchone()[0]

    async def get_database_stats(self) -> Dict[str, int]:
        size = 0
        if not self.is_memory and os.path.exists(self.db_path):
            size = os.path.getsize(self.db_path)

        with self._statement("read database statistics") as conn:
            return {
                'sources': conn.execute("SELECT COUNT(*) FROM sources").fetchone()[0],
                'articles': conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0],
                'chunks': conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0],
                'embeddings': conn.execute("SELECT COUNT(*) FROM chunks_vec").fetchone()[0],
                'database_size': size,
            }
