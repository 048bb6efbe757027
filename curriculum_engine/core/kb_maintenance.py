"""Knowledge-base consistency checks and repairs.

The document registry is the source of truth. The chunk store can drift
from it: chunk counts that no longer match, or chunk sets whose document
record is gone (orphans). These helpers report and repair that drift.
"""

from typing import Any
from uuid import UUID

from curriculum_engine.core.document_processor import DocumentProcessor, get_document_processor
from curriculum_engine.core.errors import NotFoundError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stages import VALID_STAGES
from curriculum_engine.db.blob_store import delete_blob
from curriculum_engine.db.documents import (
    STATUS_PROCESSED,
    count_documents_by_status,
    delete_document_record,
    get_document,
    list_document_ids,
    list_documents_by_status,
    reset_to_pending,
    set_stage_ids,
)
from curriculum_engine.db.vector_store import VectorStore, get_vector_store

logger = get_logger(__name__)


def _store(vector_store: VectorStore | None) -> VectorStore:
    return vector_store or get_vector_store()


def find_orphan_document_ids(vector_store: VectorStore | None = None) -> list[str]:
    """Document ids that own chunks but have no registry record."""
    known = list_document_ids()
    return [doc_id for doc_id in _store(vector_store).find_all_document_ids() if doc_id not in known]


def check_knowledge_base_health(vector_store: VectorStore | None = None) -> dict[str, Any]:
    """
    Compare every processed document with the chunk store.

    Returns:
        Dict with ``health`` (overall, counts), ``stats`` (store totals and
        documents by status) and ``issues`` (mismatches, orphans)
    """
    store = _store(vector_store)
    documents = list_documents_by_status(STATUS_PROCESSED)

    results = [
        store.check_health(str(doc["id"]), int(doc.get("chunk_count") or 0)) for doc in documents
    ]
    healthy = sum(1 for r in results if r["healthy"])
    mismatches = [r for r in results if r["mismatch"]]
    orphans = find_orphan_document_ids(store)

    overall = "healthy" if not mismatches and not orphans else "issues_found"
    if overall != "healthy":
        logger.warning(
            f"Knowledge base issues: {len(mismatches)} mismatched, {len(orphans)} orphan sets"
        )

    return {
        "health": {
            "overall": overall,
            "totalDocuments": len(documents),
            "healthyDocuments": healthy,
            "mismatchedDocuments": len(mismatches),
            "orphanChunkSets": len(orphans),
        },
        "stats": {
            **store.get_stats(),
            "documentsByStatus": count_documents_by_status(),
        },
        "issues": {"mismatches": mismatches, "orphans": orphans},
    }


def cleanup_orphans(vector_store: VectorStore | None = None) -> dict[str, Any]:
    """Delete chunk sets whose document record no longer exists."""
    store = _store(vector_store)
    orphans = find_orphan_document_ids(store)

    cleaned = 0
    for doc_id in orphans:
        cleaned += store.delete_by_document_id(doc_id)

    logger.info(f"Cleaned up {cleaned} orphan chunks from {len(orphans)} document sets")
    return {"cleaned": cleaned, "orphanDocIds": orphans}


def mark_for_reprocess(document_ids: list[str]) -> int:
    """Send documents back to pending; returns how many were updated."""
    updated = reset_to_pending(document_ids)
    logger.info(f"Marked {updated} documents for reprocessing")
    return updated


def clean_stage_ids(stage_ids: list[Any]) -> list[str]:
    """Valid stage ids only, upper-cased, input order kept."""
    return [
        s.upper() for s in stage_ids if isinstance(s, str) and s.upper() in VALID_STAGES
    ]


def update_document_stages(
    document_id: UUID | str,
    stage_ids: list[Any],
    vector_store: VectorStore | None = None,
) -> dict[str, Any]:
    """
    Re-scope a document to stages without reprocessing it.

    Chunk metadata is patched only for processed documents that have chunks.

    Raises:
        NotFoundError: If the document does not exist
    """
    doc = get_document(document_id)
    if not doc:
        raise NotFoundError(f"Document not found: {document_id}")

    cleaned = clean_stage_ids(stage_ids)
    set_stage_ids(document_id, cleaned)

    updated_chunks = 0
    if doc.get("status") == STATUS_PROCESSED and int(doc.get("chunk_count") or 0) > 0:
        updated_chunks = _store(vector_store).update_stage_ids(str(document_id), cleaned)

    return {"document_id": str(document_id), "stage_ids": cleaned, "updatedChunks": updated_chunks}


def delete_document(
    document_id: UUID | str,
    vector_store: VectorStore | None = None,
) -> dict[str, Any]:
    """
    Delete a document's blob, chunks and registry record, in that order.

    Blob and chunk failures are reported but do not block deletion; only a
    registry failure raises.

    Returns:
        Dict with success, partial and per-step results

    Raises:
        NotFoundError: If the document does not exist
    """
    doc = get_document(document_id)
    if not doc:
        raise NotFoundError(f"Document not found: {document_id}")

    steps: dict[str, dict[str, Any]] = {}

    try:
        delete_blob(doc["storage_key"])
        steps["blob"] = {"success": True}
    except Exception as e:
        logger.warning(
            f"Blob delete failed for {document_id}: {e}", extra={"document_id": str(document_id)}
        )
        steps["blob"] = {"success": False, "error": str(e), "kind": getattr(e, "kind", None)}

    try:
        deleted = _store(vector_store).delete_by_document_id(str(document_id))
        steps["chunks"] = {"success": True, "deleted": deleted}
    except Exception as e:
        logger.warning(
            f"Chunk delete failed for {document_id}: {e}", extra={"document_id": str(document_id)}
        )
        steps["chunks"] = {"success": False, "error": str(e)}

    delete_document_record(document_id)
    steps["registry"] = {"success": True}

    partial = not all(step["success"] for step in steps.values())
    return {"success": True, "partial": partial, "document_id": str(document_id), "steps": steps}


async def retry_document(
    document_id: UUID | str, processor: DocumentProcessor | None = None
) -> dict[str, Any]:
    """Reprocess a single document immediately."""
    return await (processor or get_document_processor()).process_document(document_id)
