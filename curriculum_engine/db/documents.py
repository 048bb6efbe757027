"""Database operations for the knowledge-base document registry."""

from collections import Counter
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from curriculum_engine.core.logging import get_logger
from curriculum_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "documents"

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_ERROR = "error"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def create_document(
    filename: str,
    original_name: str,
    mime_type: str,
    size: int,
    storage_key: str,
    uploaded_by: str | None = None,
    stage_ids: list[str] | None = None,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> dict[str, Any]:
    """Register an uploaded document as pending.

    Args:
        filename: Stored filename
        original_name: Name shown to users and cited in prompts
        mime_type: MIME type used to pick an extractor
        size: Size in bytes
        storage_key: Blob store key
        uploaded_by: Uploading user id
        stage_ids: Stages this document is scoped to; empty means global
        chunk_size: Optional per-document chunk window override
        chunk_overlap: Optional per-document overlap override

    Returns:
        Created document record
    """
    supabase = get_supabase()

    record: dict[str, Any] = {
        "filename": filename,
        "original_name": original_name,
        "mime_type": mime_type,
        "size": size,
        "storage_key": storage_key,
        "status": STATUS_PENDING,
        "chunk_count": 0,
        "stage_ids": stage_ids or [],
        "processing_attempts": 0,
    }
    if uploaded_by:
        record["uploaded_by"] = uploaded_by
    if chunk_size is not None:
        record["chunk_size"] = chunk_size
    if chunk_overlap is not None:
        record["chunk_overlap"] = chunk_overlap

    response = supabase.table(TABLE).insert(record).execute()

    if not response.data:
        raise ValueError("Failed to create document record")

    doc = response.data[0]
    logger.info(
        f"Registered document {doc['id']}: {original_name}",
        extra={"document_id": doc["id"]},
    )
    return doc


def get_document(document_id: UUID | str) -> dict[str, Any] | None:
    """Get a document by ID."""
    supabase = get_supabase()

    response = supabase.table(TABLE).select("*").eq("id", str(document_id)).execute()

    return response.data[0] if response.data else None


def get_documents_by_ids(document_ids: list[str]) -> list[dict[str, Any]]:
    """Fetch several documents at once; missing ids are simply absent."""
    if not document_ids:
        return []

    supabase = get_supabase()

    response = (
        supabase.table(TABLE)
        .select("id, original_name, filename")
        .in_("id", list(document_ids))
        .execute()
    )
    return response.data or []


def list_documents_by_status(status: str, limit: int | None = None) -> list[dict[str, Any]]:
    """List documents in a given processing status, oldest first."""
    supabase = get_supabase()

    query = (
        supabase.table(TABLE)
        .select("*")
        .eq("status", status)
        .order("created_at", desc=False)
    )
    if limit:
        query = query.limit(limit)

    response = query.execute()
    return response.data or []


def list_document_ids() -> set[str]:
    """Every document id present in the registry."""
    supabase = get_supabase()

    response = supabase.table(TABLE).select("id").execute()
    return {row["id"] for row in (response.data or [])}


def count_documents_by_status() -> dict[str, int]:
    """Count registry records per status."""
    supabase = get_supabase()

    response = supabase.table(TABLE).select("status").execute()
    return dict(Counter(row["status"] for row in (response.data or [])))


def update_document(document_id: UUID | str, updates: dict[str, Any]) -> dict[str, Any]:
    """Apply a partial update to a document.

    Raises:
        ValueError: If the document does not exist
    """
    supabase = get_supabase()

    response = (
        supabase.table(TABLE)
        .update({**updates, "updated_at": _now()})
        .eq("id", str(document_id))
        .execute()
    )

    if not response.data:
        raise ValueError(f"Document {document_id} not found")

    return response.data[0]


def mark_processing(document_id: UUID | str, attempts: int) -> dict[str, Any]:
    """Move a document to processing and record the attempt number."""
    return update_document(
        document_id,
        {"status": STATUS_PROCESSING, "processing_attempts": attempts},
    )


def mark_processed(document_id: UUID | str, chunk_count: int) -> dict[str, Any]:
    doc = update_document(
        document_id,
        {
            "status": STATUS_PROCESSED,
            "chunk_count": chunk_count,
            "error_message": None,
            "error_retryable": None,
            "last_processed_at": _now(),
        },
    )
    logger.info(
        f"Document {document_id} processed with {chunk_count} chunks",
        extra={"document_id": str(document_id)},
    )
    return doc


def mark_error(document_id: UUID | str, error_message: str, retryable: bool) -> dict[str, Any]:
    """Record a failed attempt.

    Args:
        document_id: Document id
        error_message: Failure reason shown to admins
        retryable: False for terminal failures such as unsupported content
    """
    doc = update_document(
        document_id,
        {
            "status": STATUS_ERROR,
            "error_message": error_message,
            "error_retryable": retryable,
            "last_processed_at": _now(),
        },
    )
    logger.warning(
        f"Document {document_id} failed: {error_message}",
        extra={"document_id": str(document_id)},
    )
    return doc


def reset_to_pending(document_ids: list[str]) -> int:
    """Mark documents for reprocessing; returns how many were updated."""
    if not document_ids:
        return 0

    supabase = get_supabase()

    response = (
        supabase.table(TABLE)
        .update({"status": STATUS_PENDING, "error_message": None, "updated_at": _now()})
        .in_("id", list(document_ids))
        .execute()
    )
    return len(response.data or [])


def set_stage_ids(document_id: UUID | str, stage_ids: list[str]) -> dict[str, Any]:
    return update_document(document_id, {"stage_ids": stage_ids})


def delete_document_record(document_id: UUID | str) -> bool:
    """Delete a registry record.

    Note: This does not delete the blob or chunks.

    Returns:
        True if deleted, False if not found
    """
    supabase = get_supabase()

    response = supabase.table(TABLE).delete().eq("id", str(document_id)).execute()

    if response.data:
        logger.info(f"Deleted document record {document_id}")
        return True
    return False
