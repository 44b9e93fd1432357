"""
Tests for DocumentNormalizer
=============================
Media type dispatch, page rendering and input errors.
"""

import pytest

from vat_extraction.input_handler import DocumentNormalizer, TABULAR, VISUAL
from vat_extraction.utils.exceptions import (
    CorruptedDocumentError,
    ErrorCategory,
    InputError,
    UnsupportedMediaTypeError,
)


@pytest.fixture
def normalizer():
    return DocumentNormalizer()


class TestDocumentNormalizer:
    """Tests for DocumentNormalizer.normalize."""

    def test_csv_becomes_single_tabular_page(self, normalizer, csv_bytes):
        document = normalizer.normalize(csv_bytes, "text/csv; charset=utf-8")

        assert document.kind == TABULAR
        assert document.is_tabular
        assert document.page_count == 1
        assert "VAT Amount" in document.text
        assert document.images == []
        assert document.metadata["size_bytes"] == len(csv_bytes)

    def test_xlsx_sheets_become_pages(self, normalizer, xlsx_bytes):
        media = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        document = normalizer.normalize(xlsx_bytes, media)

        assert document.is_tabular
        assert document.pages[0].label == "Sales"
        assert "VAT Amount" in document.pages[0].text
        assert "23.00" in document.pages[0].text

    def test_png_becomes_rgb_page_without_text(self, normalizer, png_bytes):
        document = normalizer.normalize(png_bytes, "image/png")

        assert document.kind == VISUAL
        assert document.page_count == 1
        assert document.pages[0].has_image
        assert document.images[0].mode == "RGB"
        assert document.text == ""

    def test_pdf_keeps_text_layer(self, normalizer, pdf_bytes):
        document = normalizer.normalize(pdf_bytes, "application/pdf")

        assert document.kind == VISUAL
        assert document.page_count == 1
        assert document.pages[0].has_image
        assert "VAT" in document.text

    def test_plain_text_is_single_text_page(self, normalizer):
        document = normalizer.normalize(b"VAT 23% EUR 4.60\n", "text/plain")

        assert not document.is_tabular
        assert document.images == []
        assert document.text == "VAT 23% EUR 4.60"

    def test_media_type_is_canonicalised(self, normalizer):
        assert normalizer.canonical_media_type(" Application/PDF ; q=1") == "application/pdf"
        assert normalizer.is_supported("IMAGE/PNG")
        assert not normalizer.is_supported("application/msword")


class TestNormalizerErrors:
    """Input failures are InputErrors with the INPUT_ERROR category."""

    def test_unsupported_media_type(self, normalizer):
        with pytest.raises(UnsupportedMediaTypeError) as excinfo:
            normalizer.normalize(b"data", "application/msword")
        assert excinfo.value.category == ErrorCategory.INPUT_ERROR
        assert "application/pdf" in excinfo.value.details["supported_types"]

    def test_empty_payload(self, normalizer):
        with pytest.raises(CorruptedDocumentError):
            normalizer.normalize(b"", "application/pdf")

    def test_pdf_without_header(self, normalizer):
        with pytest.raises(CorruptedDocumentError):
            normalizer.normalize(b"this is not a pdf at all", "application/pdf")

    def test_truncated_image(self, normalizer, png_bytes):
        with pytest.raises(InputError):
            normalizer.normalize(png_bytes[:20], "image/png")

    def test_workbook_that_is_not_a_zip(self, normalizer):
        media = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        with pytest.raises(CorruptedDocumentError):
            normalizer.normalize(b"Date,VAT\n", media)

    def test_oversized_payload(self, png_bytes):
        normalizer = DocumentNormalizer(max_file_size=10)
        with pytest.raises(CorruptedDocumentError) as excinfo:
            normalizer.normalize(png_bytes, "image/png")
        assert "exceeds" in excinfo.value.reason
