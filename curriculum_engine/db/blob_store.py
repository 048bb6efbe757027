"""Blob store access for uploaded knowledge-base files (Supabase Storage)."""

from typing import Any

import httpx

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.errors import CurriculumEngineError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

KIND_EXISTS = "exists"
KIND_FORBIDDEN = "forbidden"
KIND_NOT_FOUND = "not_found"
KIND_CONNECTION = "connection_error"


class BlobStoreError(CurriculumEngineError):
    """Storage failure normalized to one of four kinds."""

    def __init__(self, message: str, kind: str):
        self.kind = kind
        self.retryable = kind == KIND_CONNECTION
        super().__init__(message)


def _status_of(error: Exception) -> int | None:
    """Pull an HTTP status out of a storage client exception."""
    for attr in ("status_code", "status", "statusCode"):
        value = getattr(error, attr, None)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    if error.args and isinstance(error.args[0], dict):
        value = error.args[0].get("statusCode") or error.args[0].get("status")
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


def normalize_storage_error(error: Exception) -> BlobStoreError:
    """Map a provider-specific storage exception onto BlobStoreError."""
    if isinstance(error, BlobStoreError):
        return error
    if isinstance(error, httpx.RequestError):
        return BlobStoreError(f"Storage connection failed: {error}", KIND_CONNECTION)

    status = _status_of(error)
    text = str(error).lower()

    if status == 404 or "not found" in text:
        kind = KIND_NOT_FOUND
    elif status in (401, 403) or "unauthorized" in text or "forbidden" in text:
        kind = KIND_FORBIDDEN
    elif status == 409 or "already exists" in text or "duplicate" in text:
        kind = KIND_EXISTS
    else:
        kind = KIND_CONNECTION

    return BlobStoreError(f"Storage operation failed: {error}", kind)


def _bucket(bucket: str | None) -> Any:
    return get_supabase().storage.from_(bucket or get_settings().DOCUMENT_BUCKET)


def download_blob(storage_key: str, bucket: str | None = None) -> bytes:
    """
    Download file bytes.

    Raises:
        BlobStoreError: With kind not_found, forbidden or connection_error
    """
    try:
        return _bucket(bucket).download(storage_key)
    except Exception as e:
        raise normalize_storage_error(e) from e


def delete_blob(storage_key: str, bucket: str | None = None) -> None:
    """
    Remove a file.

    Raises:
        BlobStoreError: With a normalized kind
    """
    try:
        _bucket(bucket).remove([storage_key])
    except Exception as e:
        raise normalize_storage_error(e) from e
    logger.info(f"Removed blob {storage_key}")
