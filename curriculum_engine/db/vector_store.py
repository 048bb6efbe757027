"""pgvector-backed chunk store.

Chunks live in Postgres rather than Supabase's REST layer because inserts
for one document must commit atomically and the schema needs DDL.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.logging import get_logger

logger = get_logger(__name__)

TABLE_NAME = "document_chunks"
INDEX_NAME = "document_chunks_embedding_idx"

# Chunks match a stage when untagged, tagged with an empty list, or tagged with the stage
STAGE_FILTER_SQL = (
    "((metadata->'stage_ids') IS NULL"
    " OR jsonb_array_length(COALESCE(metadata->'stage_ids', '[]'::jsonb)) = 0"
    " OR (metadata->'stage_ids') ? %s)"
)


def to_vector_literal(embedding: list[float]) -> str:
    """Render a vector in pgvector's text input format."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def create_pool(database_url: str, min_conn: int = 1, max_conn: int = 5) -> ThreadedConnectionPool:
    """Open the connection pool shared by every VectorStore call."""
    return ThreadedConnectionPool(min_conn, max_conn, dsn=database_url)


class VectorStore:
    """Durable store and similarity index for document chunks."""

    def __init__(self, pool: ThreadedConnectionPool, dimension: int = 1536):
        self.pool = pool
        self.dimension = dimension

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        conn = self.pool.getconn()
        try:
            yield conn
        finally:
            self.pool.putconn(conn)

    # =========================================================================
    # Schema
    # =========================================================================

    def init_schema(self) -> None:
        """
        Idempotently create the extension, chunk table and HNSW index.

        HNSW needs no training data, so the index can be built while the
        table is still empty.
        """
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    cur.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                            id SERIAL PRIMARY KEY,
                            document_id TEXT NOT NULL,
                            chunk_index INTEGER NOT NULL,
                            content TEXT NOT NULL,
                            embedding vector({int(self.dimension)}),
                            metadata JSONB DEFAULT '{{}}'::jsonb,
                            created_at TIMESTAMPTZ DEFAULT NOW(),
                            UNIQUE (document_id, chunk_index)
                        )
                        """
                    )
                    cur.execute(
                        "SELECT 1 FROM pg_indexes WHERE tablename = %s AND indexname = %s",
                        (TABLE_NAME, INDEX_NAME),
                    )
                    if cur.fetchone() is None:
                        cur.execute(
                            f"CREATE INDEX {INDEX_NAME} ON {TABLE_NAME} "
                            "USING hnsw (embedding vector_cosine_ops)"
                        )
                        logger.info(f"Created HNSW index {INDEX_NAME}")
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_chunks(self, document_id: str, chunks: list[dict[str, Any]]) -> int:
        """
        Upsert chunks for a document in one transaction.

        Args:
            document_id: Owning document id
            chunks: Dicts with chunk_index, content, embedding, metadata

        Returns:
            Number of chunks written

        Raises:
            psycopg2.Error: On any failure; nothing from this call is kept
        """
        if not chunks:
            return 0

        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    for chunk in chunks:
                        cur.execute(
                            f"""
                            INSERT INTO {TABLE_NAME}
                                (document_id, chunk_index, content, embedding, metadata)
                            VALUES (%s, %s, %s, %s::vector, %s)
                            ON CONFLICT (document_id, chunk_index)
                            DO UPDATE SET
                                content = EXCLUDED.content,
                                embedding = EXCLUDED.embedding,
                                metadata = EXCLUDED.metadata
                            """,
                            (
                                document_id,
                                chunk["chunk_index"],
                                chunk["content"],
                                to_vector_literal(chunk["embedding"]),
                                Json(chunk.get("metadata") or {}),
                            ),
                        )
                conn.commit()
            except Exception:
                conn.rollback()
                logger.error(
                    f"Chunk insert rolled back for document {document_id}",
                    extra={"document_id": document_id},
                )
                raise

        logger.info(
            f"Stored {len(chunks)} chunks for document {document_id}",
            extra={"document_id": document_id},
        )
        return len(chunks)

    def replace_chunks(self, document_id: str, chunks: list[dict[str, Any]]) -> int:
        """Delete every chunk of a document and insert the new set atomically.

        Used on reprocessing so a shorter text never leaves stale tail chunks.
        """
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        f"DELETE FROM {TABLE_NAME} WHERE document_id = %s", (document_id,)
                    )
                    for chunk in chunks:
                        cur.execute(
                            f"""
                            INSERT INTO {TABLE_NAME}
                                (document_id, chunk_index, content, embedding, metadata)
                            VALUES (%s, %s, %s, %s::vector, %s)
                            """,
                            (
                                document_id,
                                chunk["chunk_index"],
                                chunk["content"],
                                to_vector_literal(chunk["embedding"]),
                                Json(chunk.get("metadata") or {}),
                            ),
                        )
                conn.commit()
            except Exception:
                conn.rollback()
                logger.error(
                    f"Chunk replace rolled back for document {document_id}",
                    extra={"document_id": document_id},
                )
                raise

        return len(chunks)

    def delete_by_document_id(self, document_id: str) -> int:
        """Delete all chunks of a document; returns the deleted row count."""
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        f"DELETE FROM {TABLE_NAME} WHERE document_id = %s", (document_id,)
                    )
                    deleted = cur.rowcount
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(
            f"Deleted {deleted} chunks for document {document_id}",
            extra={"document_id": document_id},
        )
        return deleted

    def update_stage_ids(self, document_id: str, stage_ids: list[str]) -> int:
        """
        Re-tag every chunk of a document without touching embeddings.

        An empty list removes the tag, making the chunks global again.

        Returns:
            Number of chunks updated
        """
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    if stage_ids:
                        cur.execute(
                            f"""
                            UPDATE {TABLE_NAME}
                            SET metadata = jsonb_set(
                                COALESCE(metadata, '{{}}'::jsonb), '{{stage_ids}}', %s::jsonb
                            )
                            WHERE document_id = %s
                            """,
                            (Json(list(stage_ids)), document_id),
                        )
                    else:
                        cur.execute(
                            f"""
                            UPDATE {TABLE_NAME}
                            SET metadata = COALESCE(metadata, '{{}}'::jsonb) - 'stage_ids'
                            WHERE document_id = %s
                            """,
                            (document_id,),
                        )
                    updated = cur.rowcount
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        return updated

    # =========================================================================
    # Reads
    # =========================================================================

    def search_similar(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        document_ids: list[str] | None = None,
        stage_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Nearest chunks by cosine distance.

        Args:
            query_embedding: Query vector
            top_k: Maximum results
            document_ids: Optional allowlist of owning documents
            stage_id: Optional stage; untagged chunks always match

        Returns:
            Rows with id, document_id, chunk_index, content, metadata and
            score (1 - cosine distance), best first
        """
        vector = to_vector_literal(query_embedding)
        conditions: list[str] = []
        params: list[Any] = [vector]

        if document_ids:
            conditions.append("document_id = ANY(%s)")
            params.append(list(document_ids))
        if stage_id:
            conditions.append(STAGE_FILTER_SQL)
            params.append(stage_id)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([vector, int(top_k)])

        sql = f"""
            SELECT id, document_id, chunk_index, content, metadata,
                   1 - (embedding <=> %s::vector) AS score
            FROM {TABLE_NAME}
            {where}
            ORDER BY embedding <=> %s::vector
            LIMIT %s
        """

        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.rollback()

        return [
            {
                "id": row["id"],
                "document_id": row["document_id"],
                "chunk_index": row["chunk_index"],
                "content": row["content"],
                "metadata": row["metadata"] or {},
                "score": float(row["score"]),
            }
            for row in rows
        ]

    def get_chunk_count(self, document_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) FROM {TABLE_NAME} WHERE document_id = %s", (document_id,)
                )
                count = cur.fetchone()[0]
            conn.rollback()
        return int(count)

    def check_health(self, document_id: str, expected_count: int) -> dict[str, Any]:
        """Compare the stored chunk count with the registry's expected count."""
        actual = self.get_chunk_count(document_id)
        mismatch = actual != expected_count
        return {
            "document_id": document_id,
            "expected_chunks": expected_count,
            "actual_chunks": actual,
            "healthy": not mismatch and actual > 0,
            "mismatch": mismatch,
        }

    def find_all_document_ids(self) -> list[str]:
        """Distinct document ids that own at least one chunk."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT DISTINCT document_id FROM {TABLE_NAME}")
                rows = cur.fetchall()
            conn.rollback()
        return [row[0] for row in rows]

    def get_stats(self) -> dict[str, int]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*), COUNT(DISTINCT document_id) FROM {TABLE_NAME}"
                )
                total_chunks, total_documents = cur.fetchone()
            conn.rollback()
        return {"total_chunks": int(total_chunks), "total_documents": int(total_documents)}


@lru_cache(maxsize=1)
def get_vector_store() -> VectorStore:
    """Get the process-wide vector store over a pooled connection."""
    settings = get_settings()
    pool = create_pool(settings.DATABASE_URL, settings.DB_POOL_MIN, settings.DB_POOL_MAX)
    return VectorStore(pool, dimension=settings.EMBEDDING_DIM)
