"""
Tests for the document lifecycle
=================================
"""

import pytest

from vat_extraction.documents import Category, Document, DocumentStatus
from vat_extraction.utils.exceptions import InvalidTransitionError


def make_document(**kwargs):
    return Document(id="doc_1", fingerprint="abc", media_type="image/png",
                    category=Category.PURCHASES, **kwargs)


class TestCategory:

    @pytest.mark.parametrize("raw", ["sales", "SALES", " Sales ", Category.SALES])
    def test_parse(self, raw):
        assert Category.parse(raw) == Category.SALES

    def test_unknown_category(self):
        with pytest.raises(ValueError):
            Category.parse("expenses")


class TestTransitions:

    def test_regular_lifecycle(self):
        document = make_document()

        for target in (DocumentStatus.QUEUED, DocumentStatus.PROCESSING,
                       DocumentStatus.SUCCEEDED, DocumentStatus.CORRECTED):
            document.transition(target)

        assert document.status == DocumentStatus.CORRECTED

    def test_failure_keeps_reason(self):
        document = make_document(status=DocumentStatus.PROCESSING)

        document.transition(DocumentStatus.FAILED, error="HTTP 401")

        assert document.error == "HTTP 401"

    @pytest.mark.parametrize("start, target", [
        (DocumentStatus.UPLOADED, DocumentStatus.SUCCEEDED),
        (DocumentStatus.SUCCEEDED, DocumentStatus.FAILED),
        (DocumentStatus.FAILED, DocumentStatus.CORRECTED),
        (DocumentStatus.SUCCEEDED, DocumentStatus.QUEUED),
    ])
    def test_illegal_transitions(self, start, target):
        document = make_document(status=start)

        with pytest.raises(InvalidTransitionError):
            document.transition(target)
        assert document.status == start

    @pytest.mark.parametrize("start", [
        DocumentStatus.SUCCEEDED, DocumentStatus.FAILED, DocumentStatus.CORRECTED,
    ])
    def test_forced_requeue_clears_error(self, start):
        document = make_document(status=start, error="old")

        document.transition(DocumentStatus.QUEUED, force=True)

        assert document.status == DocumentStatus.QUEUED
        assert document.error is None

    def test_to_dict(self):
        data = make_document(filename="receipt.png").to_dict()

        assert data["category"] == "purchases"
        assert data["status"] == "uploaded"
        assert data["filename"] == "receipt.png"
