"""Text extraction from knowledge-base uploads."""

import io
from dataclasses import dataclass

import fitz
from docx import Document as DocxDocument

from curriculum_engine.core.errors import UnsupportedDocumentError
from curriculum_engine.core.logging import get_logger

logger = get_logger(__name__)

PDF_TYPES = {"application/pdf"}
WORD_TYPES = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
}
PLAIN_TYPES = {"text/plain", "text/markdown"}


@dataclass
class ExtractedText:
    """Result of text extraction from a document."""

    text: str
    method: str
    page_count: int = 0


def _decode_text(raw_bytes: bytes) -> str:
    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        return raw_bytes.decode("utf-8-sig")
    try:
        return raw_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnsupportedDocumentError(f"Text document is not valid UTF-8: {e}") from e


def _extract_pdf(raw_bytes: bytes) -> ExtractedText:
    try:
        doc = fitz.open(stream=io.BytesIO(raw_bytes), filetype="pdf")
    except Exception as e:
        raise UnsupportedDocumentError(f"Failed to open PDF: {e}") from e

    try:
        pages = [page.get_text("text") for page in doc]
    finally:
        doc.close()

    return ExtractedText(text="\n\n".join(pages), method="pdf", page_count=len(pages))


def _extract_docx(raw_bytes: bytes) -> ExtractedText:
    try:
        doc = DocxDocument(io.BytesIO(raw_bytes))
    except Exception as e:
        raise UnsupportedDocumentError(f"Failed to open DOCX: {e}") from e

    parts = [para.text for para in doc.paragraphs if para.text.strip()]

    # Tables are flattened as pipe-delimited rows
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                parts.append(" | ".join(cells))

    return ExtractedText(text="\n".join(parts), method="docx")


def extract_text(raw_bytes: bytes, mime_type: str | None, filename: str = "") -> ExtractedText:
    """
    Extract plain text from a document.

    Args:
        raw_bytes: Raw file content
        mime_type: Registered MIME type of the upload
        filename: Original filename, used for logging only

    Returns:
        ExtractedText with the non-empty text

    Raises:
        UnsupportedDocumentError: If the type is unsupported or no text is found
    """
    mime = (mime_type or "").split(";")[0].strip().lower()

    if mime in PDF_TYPES:
        result = _extract_pdf(raw_bytes)
    elif mime in WORD_TYPES:
        result = _extract_docx(raw_bytes)
    elif mime in PLAIN_TYPES:
        result = ExtractedText(text=_decode_text(raw_bytes), method="text")
    else:
        raise UnsupportedDocumentError(f"Unsupported file type: {mime_type}")

    if not result.text.strip():
        raise UnsupportedDocumentError("No text content extracted from document")

    logger.debug(
        f"Extracted {len(result.text)} chars from {filename or 'document'} via {result.method}"
    )
    return result
