"""Tests for document text extraction."""

import io

import fitz
import pytest
from docx import Document

from curriculum_engine.core.errors import UnsupportedDocumentError
from curriculum_engine.core.text_extraction import extract_text


def _pdf_bytes(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def _docx_bytes() -> bytes:
    doc = Document()
    doc.add_paragraph("Curriculum overview")
    doc.add_paragraph("")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Grade"
    table.rows[0].cells[1].text = "Hours"
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


class TestExtractText:
    def test_plain_text(self):
        result = extract_text("课程 资源".encode(), "text/plain", "notes.txt")

        assert result.text == "课程 资源"
        assert result.method == "text"

    def test_plain_text_strips_bom(self):
        result = extract_text(b"\xef\xbb\xbfhello", "text/plain; charset=utf-8")

        assert result.text == "hello"

    def test_invalid_utf8_is_unsupported(self):
        with pytest.raises(UnsupportedDocumentError, match="UTF-8"):
            extract_text(b"\xff\xfe\xfa", "text/plain")

    def test_pdf_pages_joined(self):
        result = extract_text(_pdf_bytes("Page one", "Page two"), "application/pdf")

        assert result.method == "pdf"
        assert result.page_count == 2
        assert "Page one" in result.text
        assert "Page two" in result.text

    def test_corrupt_pdf_is_unsupported(self):
        with pytest.raises(UnsupportedDocumentError):
            extract_text(b"not a pdf", "application/pdf")

    def test_docx_paragraphs_and_tables(self):
        result = extract_text(
            _docx_bytes(),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )

        assert result.method == "docx"
        assert result.text.splitlines() == ["Curriculum overview", "Grade | Hours"]

    def test_unsupported_mime_type(self):
        with pytest.raises(UnsupportedDocumentError, match="Unsupported file type"):
            extract_text(b"\x89PNG", "image/png")

    def test_empty_text_is_unsupported(self):
        with pytest.raises(UnsupportedDocumentError, match="No text content"):
            extract_text(b"   \n ", "text/plain")
