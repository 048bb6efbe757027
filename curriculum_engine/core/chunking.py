"""Text chunking utilities for knowledge-base documents."""

import re
from typing import Any

# Characters treated as sentence boundaries when picking a break point
SENTENCE_BREAKS = (".", "。", "\n")

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace into single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def _last_break(text: str, start: int, end: int) -> int:
    """Index of the last sentence boundary in text[start:end + 1], or -1."""
    return max(text.rfind(mark, start, end + 1) for mark in SENTENCE_BREAKS)


def chunk_text(
    text: str,
    max_chars: int = 500,
    overlap: int = 100,
    metadata: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Split text into overlapping chunks.

    Whitespace is collapsed first. Each window holds at most ``max_chars``
    characters and is cut at the last sentence boundary when that boundary
    lies past the middle of the window. The next window starts ``overlap``
    characters before the previous one ended. The output depends only on
    the inputs, so reprocessing the same text reproduces the same chunks.

    Args:
        text: Text to chunk
        max_chars: Maximum characters per chunk
        overlap: Number of characters to overlap between chunks
        metadata: Optional metadata to include in each chunk

    Returns:
        List of chunk dicts with:
            - chunk_index: int (0-based, contiguous)
            - content: str
            - start_char: int (offset into the normalized text)
            - end_char: int
            - metadata: dict

    Raises:
        ValueError: If max_chars <= overlap
    """
    if max_chars <= overlap:
        raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")

    cleaned = normalize_whitespace(text)
    if not cleaned:
        return []

    chunks: list[dict[str, Any]] = []
    start = 0
    text_length = len(cleaned)

    while start < text_length:
        end = min(start + max_chars, text_length)

        if end < text_length:
            break_point = _last_break(cleaned, start, end)
            if break_point > start + max_chars / 2:
                end = break_point + 1

        content = cleaned[start:end].strip()
        if content:
            chunks.append(
                {
                    "chunk_index": len(chunks),
                    "content": content,
                    "start_char": start,
                    "end_char": end,
                    "metadata": dict(metadata or {}),
                }
            )

        if end >= text_length:
            break

        # A short sentence-cut window must still move the cursor forward
        next_start = end - overlap
        start = next_start if next_start > start else end

    return chunks
