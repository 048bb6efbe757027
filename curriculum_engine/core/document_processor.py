"""Knowledge-base document processing.

Turns an uploaded document into embedded chunks: download, extract,
chunk, embed, then replace the document's chunk set in one transaction.
Failures mark the document as errored and record whether a later retry
can succeed.

Also provides the background queue worker that drains pending documents.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator
from uuid import UUID, uuid4

from curriculum_engine.core.chunking import chunk_text
from curriculum_engine.core.config import get_settings
from curriculum_engine.core.embeddings import EmbeddingClient, get_embedding_client
from curriculum_engine.core.errors import NotFoundError, UnsupportedDocumentError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.text_extraction import extract_text
from curriculum_engine.db.blob_store import download_blob
from curriculum_engine.db.documents import (
    STATUS_ERROR,
    STATUS_PENDING,
    get_document,
    list_documents_by_status,
    mark_error,
    mark_processed,
    mark_processing,
)
from curriculum_engine.db.vector_store import VectorStore, get_vector_store

logger = get_logger(__name__)

# Queue worker defaults
DEFAULT_BATCH_SIZE = 5
DEFAULT_POLL_INTERVAL = 5.0  # seconds


class DocumentProcessor:
    """Processes registry documents into the chunk store.

    Calls for the same document id are serialized; different documents
    proceed independently.
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient | None = None,
        vector_store: VectorStore | None = None,
        embedding_batch_size: int | None = None,
        max_attempts: int | None = None,
    ):
        settings = get_settings()
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self.embedding_batch_size = embedding_batch_size or settings.EMBEDDING_BATCH_SIZE
        self.max_attempts = max_attempts or settings.MAX_PROCESSING_ATTEMPTS
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def embedding_client(self) -> EmbeddingClient:
        if self._embedding_client is None:
            self._embedding_client = get_embedding_client()
        return self._embedding_client

    @property
    def vector_store(self) -> VectorStore:
        if self._vector_store is None:
            self._vector_store = get_vector_store()
        return self._vector_store

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the entry once no caller holds or waits on it
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    async def _embed_chunks(self, chunks: list[dict[str, Any]]) -> list[list[float]]:
        embeddings: list[list[float]] = []
        for start in range(0, len(chunks), self.embedding_batch_size):
            batch = chunks[start : start + self.embedding_batch_size]
            embeddings.extend(await self.embedding_client.embed([c["content"] for c in batch]))
        return embeddings

    async def _build_chunks(self, doc: dict[str, Any]) -> list[dict[str, Any]]:
        settings = get_settings()
        raw_bytes = await asyncio.to_thread(download_blob, doc["storage_key"])
        extracted = await asyncio.to_thread(
            extract_text, raw_bytes, doc.get("mime_type"), doc.get("original_name", "")
        )

        chunks = chunk_text(
            extracted.text,
            max_chars=doc.get("chunk_size") or settings.CHUNK_SIZE,
            overlap=doc.get("chunk_overlap") or settings.CHUNK_OVERLAP,
        )
        if not chunks:
            raise UnsupportedDocumentError("No text content extracted from document")

        embeddings = await self._embed_chunks(chunks)
        stage_ids = doc.get("stage_ids") or []

        for chunk, embedding in zip(chunks, embeddings, strict=True):
            metadata: dict[str, Any] = {
                "original_name": doc.get("original_name"),
                "chunk_index": chunk["chunk_index"],
                "total_chunks": len(chunks),
            }
            if stage_ids:
                metadata["stage_ids"] = stage_ids
            chunk["embedding"] = embedding
            chunk["metadata"] = metadata
        return chunks

    async def process_document(self, document_id: UUID | str) -> dict[str, Any]:
        """
        Process one document into the chunk store.

        Failures are recorded on the document instead of raised; the
        returned dict says whether the failure is retryable.

        Returns:
            Dict with success, document_id and chunk_count or error/retryable

        Raises:
            NotFoundError: If the document record does not exist
        """
        document_id = str(document_id)
        run_id = uuid4()

        async with self._document_lock(document_id):
            doc = await asyncio.to_thread(get_document, document_id)
            if not doc:
                raise NotFoundError(f"Document not found: {document_id}")

            attempts = int(doc.get("processing_attempts") or 0) + 1
            await asyncio.to_thread(mark_processing, document_id, attempts)
            logger.info(
                f"Processing document {document_id} (attempt {attempts})",
                extra={"document_id": document_id, "run_id": str(run_id)},
            )

            try:
                chunks = await self._build_chunks(doc)
                count = await asyncio.to_thread(self.vector_store.replace_chunks, document_id, chunks)
                await asyncio.to_thread(mark_processed, document_id, count)
            except Exception as e:
                retryable = bool(getattr(e, "retryable", False))
                await asyncio.to_thread(mark_error, document_id, str(e), retryable)
                if not retryable and not isinstance(e, UnsupportedDocumentError):
                    logger.exception(
                        f"Document {document_id} failed terminally",
                        extra={"document_id": document_id, "run_id": str(run_id)},
                    )
                return {
                    "success": False,
                    "document_id": document_id,
                    "error": str(e),
                    "retryable": retryable,
                }

            return {"success": True, "document_id": document_id, "chunk_count": count}

    async def process_pending_documents(self, limit: int | None = None) -> dict[str, Any]:
        """
        Process every pending document; one failure never stops the batch.

        Returns:
            Dict with processed and failed counts and per-document results
        """
        pending = await asyncio.to_thread(list_documents_by_status, STATUS_PENDING, limit)
        results = []

        for doc in pending:
            try:
                results.append(await self.process_document(doc["id"]))
            except NotFoundError as e:
                results.append({"success": False, "document_id": doc["id"], "error": str(e)})
            except Exception as e:
                logger.exception(
                    f"Document {doc['id']} could not be processed",
                    extra={"document_id": str(doc["id"])},
                )
                results.append({"success": False, "document_id": doc["id"], "error": str(e)})

        processed = sum(1 for r in results if r["success"])
        return {"processed": processed, "failed": len(results) - processed, "results": results}

    async def retry_failed_documents(self, max_attempts: int | None = None) -> dict[str, int]:
        """
        Reprocess errored documents that can still succeed.

        Documents whose last failure was terminal, or that have used up
        ``max_attempts`` lifetime attempts, are skipped.

        Returns:
            Dict with retried, succeeded and stillFailed counts
        """
        max_attempts = max_attempts or self.max_attempts
        failed = await asyncio.to_thread(list_documents_by_status, STATUS_ERROR)
        retried = succeeded = 0

        for doc in failed:
            if int(doc.get("processing_attempts") or 0) >= max_attempts:
                continue
            if doc.get("error_retryable") is False:
                continue

            retried += 1
            try:
                result = await self.process_document(doc["id"])
            except NotFoundError:
                continue
            except Exception:
                logger.exception(
                    f"Retry of document {doc['id']} failed", extra={"document_id": str(doc["id"])}
                )
                continue
            if result["success"]:
                succeeded += 1

        logger.info(f"Retried {retried} failed documents, {succeeded} succeeded")
        return {"retried": retried, "succeeded": succeeded, "stillFailed": retried - succeeded}


@lru_cache(maxsize=1)
def get_document_processor() -> DocumentProcessor:
    """Get the process-wide document processor."""
    return DocumentProcessor()


# =============================================================================
# Queue worker
# =============================================================================


class DocumentQueueProcessor:
    """Background worker that drains pending documents on a poll interval."""

    def __init__(
        self,
        processor: DocumentProcessor | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the worker.

        Args:
            processor: Document processor; defaults to the shared one
            batch_size: Number of pending documents fetched per batch
            poll_interval: Seconds to wait when nothing is pending
        """
        self.processor = processor or get_document_processor()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._start_time: float | None = None

    @property
    def stats(self) -> dict[str, Any]:
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "uptime_seconds": round(uptime, 1),
        }

    async def process_batch(self) -> list[dict[str, Any]]:
        summary = await self.processor.process_pending_documents(limit=self.batch_size)
        self._processed_count += summary["processed"]
        self._error_count += summary["failed"]
        return summary["results"]

    async def run_forever(self) -> None:
        """Process batches until stop() is called."""
        self._running = True
        self._start_time = time.time()

        logger.info(
            f"Starting document queue processor "
            f"(batch_size={self.batch_size}, poll_interval={self.poll_interval}s)"
        )

        while self._running:
            try:
                results = await self.process_batch()

                if results:
                    logger.info(
                        f"Processed batch of {len(results)} documents "
                        f"(total: {self._processed_count}, errors: {self._error_count})"
                    )
                else:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(f"Error in processing loop: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info("Document queue processor stopped")

    def stop(self) -> None:
        logger.info("Stopping document queue processor...")
        self._running = False
