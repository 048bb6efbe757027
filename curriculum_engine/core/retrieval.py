"""Retrieval of supporting context for stage generation.

Retrieval is a quality enhancement: provider and store failures degrade to
an empty (or fixed fallback) result set with a warning. The only failure
that reaches the caller is a missing precondition fact such as the school
name needed for web search.
"""

import asyncio
from typing import Any
from uuid import UUID

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.embeddings import EmbeddingClient, get_embedding_client
from curriculum_engine.core.errors import MissingRequiredFieldError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stages import STAGE_CONTEXTS
from curriculum_engine.core.web_search import run_web_search
from curriculum_engine.db.documents import get_documents_by_ids
from curriculum_engine.db.vector_store import VectorStore, get_vector_store

logger = get_logger(__name__)

MAX_QUERY_INPUT_LEN = 2000
KNOWLEDGE_BASE_SOURCE = "Knowledge Base"
UNKNOWN_DOCUMENT = "Unknown Document"

FALLBACK_RESULTS: list[dict[str, Any]] = [
    {
        "id": "mock_1",
        "title": "National Education Reform 2025",
        "content": (
            "The new reform emphasizes holistic development (Five-Edu) "
            "and student-centered learning..."
        ),
        "score": 0.92,
        "source": "Sample Data",
    },
    {
        "id": "mock_2",
        "title": "Local Cultural Heritage Guide",
        "content": (
            "Our region is known for its rich history in ceramic arts "
            "and Confucian philosophy..."
        ),
        "score": 0.88,
        "source": "Sample Data",
    },
]


def build_rag_query(stage: str, user_input: dict[str, Any] | None) -> str:
    """Stage topic phrase followed by the non-blank string input values."""
    values = [
        value for value in (user_input or {}).values() if isinstance(value, str) and value.strip()
    ]
    input_text = " ".join(values)[:MAX_QUERY_INPUT_LEN]
    return f"{STAGE_CONTEXTS.get(stage, '')} {input_text}".strip()


async def retrieve_chunks(
    stage: str,
    user_input: dict[str, Any] | None,
    top_k: int | None = None,
    embedding_client: EmbeddingClient | None = None,
    vector_store: VectorStore | None = None,
) -> list[dict[str, Any]]:
    """
    Chunks relevant to a stage, for prompt context.

    Returns:
        Raw chunk rows best first, or [] when retrieval fails
    """
    query = build_rag_query(stage, user_input)
    if not query:
        return []

    top_k = top_k or get_settings().RAG_TOP_K
    try:
        client = embedding_client or get_embedding_client()
        store = vector_store or get_vector_store()
        embedding = await client.embed_one(query)
        return await asyncio.to_thread(store.search_similar, embedding, top_k, None, stage)
    except Exception as e:
        logger.warning(
            f"RAG retrieval failed for {stage}, continuing without it: {e}",
            extra={"stage": stage},
        )
        return []


async def search_knowledge_base(
    query: str,
    stage_id: str | None = None,
    top_k: int = 5,
    document_ids: list[str] | None = None,
    use_fallback: bool = False,
    embedding_client: EmbeddingClient | None = None,
    vector_store: VectorStore | None = None,
) -> list[dict[str, Any]]:
    """
    Search the knowledge base and label each hit with its document title.

    Args:
        query: Free-text query
        stage_id: Restrict to chunks tagged for this stage (untagged always match)
        top_k: Maximum results
        document_ids: Optional allowlist of documents
        use_fallback: Return the fixed sample set when embedding fails

    Returns:
        Results with id, document_id, title, content, score (2 decimals),
        source, chunk_index and metadata
    """
    try:
        client = embedding_client or get_embedding_client()
        embedding = await client.embed_one(query)
    except Exception as e:
        logger.warning(f"Knowledge base embedding failed: {e}")
        return [dict(item) for item in FALLBACK_RESULTS] if use_fallback else []

    store = vector_store or get_vector_store()
    chunks = await asyncio.to_thread(store.search_similar, embedding, top_k, document_ids, stage_id)
    if not chunks:
        return []

    owner_ids = list(dict.fromkeys(chunk["document_id"] for chunk in chunks))
    documents = await asyncio.to_thread(get_documents_by_ids, owner_ids)
    titles = {str(doc["id"]): doc.get("original_name") for doc in documents}

    return [
        {
            "id": str(chunk["id"]),
            "document_id": chunk["document_id"],
            "title": titles.get(str(chunk["document_id"])) or UNKNOWN_DOCUMENT,
            "content": chunk["content"],
            "score": round(chunk["score"], 2),
            "source": KNOWLEDGE_BASE_SOURCE,
            "chunk_index": chunk["chunk_index"],
            "metadata": chunk.get("metadata") or {},
        }
        for chunk in chunks
    ]


async def retrieve_web_results(
    project_id: UUID | str,
    stage: str,
    form_data: dict[str, Any] | None = None,
    query: str | None = None,
) -> list[dict[str, Any]]:
    """
    Web results for generation, or [] when web search is off or fails.

    Raises:
        MissingRequiredFieldError: If no school name is known yet
    """
    if not get_settings().WEB_SEARCH_ENABLED:
        return []

    try:
        result = await run_web_search(project_id, stage, query=query, form_data=form_data)
    except MissingRequiredFieldError:
        raise
    except Exception as e:
        logger.warning(
            f"Web search failed for {stage}, continuing without it: {e}",
            extra={"project_id": str(project_id), "stage": stage},
        )
        return []

    return result["results"]
