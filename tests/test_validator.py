"""
Tests for MultiSourceValidator
===============================
Candidate selection, agreement scoring and review flags.
"""

import pytest

from vat_extraction.documents import Category
from vat_extraction.model_inference import (
    Diagnostic,
    Engine,
    FallbackCandidate,
    Flag,
    StructuredCandidate,
    VisionCandidate,
)
from vat_extraction.postprocessor import MultiSourceValidator
from vat_extraction.utils.exceptions import ReconciliationError


@pytest.fixture
def validator():
    return MultiSourceValidator()


def vision(total=111.36, lines=(1.51, 0.0, 109.85), confidence=0.85,
           diagnostic=Diagnostic.CLEAN_EXTRACTION, rates=(23.0,)):
    return VisionCandidate(
        line_amounts=lines,
        stated_total=total,
        confidence=confidence,
        rates=rates,
        template_id="vat-lines-v1",
        diagnostic=diagnostic,
        raw_response="Total Amount VAT: €111.36",
    )


def structured(total, confidence=0.95):
    return StructuredCandidate(
        line_amounts=(total,),
        confidence=confidence,
        tax_column="VAT Amount",
        match_strength="explicit",
    )


class TestSelection:
    """Which candidate becomes the canonical answer."""

    def test_single_clean_vision_candidate(self, validator):
        result = validator.reconcile([vision()], Category.PURCHASES)

        assert result.purchase_amounts == (111.36,)
        assert result.sales_amounts == ()
        assert result.engine == Engine.VISION
        assert result.confidence == pytest.approx(0.90)
        assert result.compliant
        assert result.flags == ()
        assert result.template_id == "vat-lines-v1"
        assert result.raw_response == "Total Amount VAT: €111.36"
        assert result.metadata["selection"] == "clean_vision"

    def test_sales_category_fills_sales_side(self, validator):
        result = validator.reconcile([vision()], "sales")

        assert result.sales_amounts == (111.36,)
        assert result.purchase_amounts == ()

    def test_structured_high_confidence_wins(self, validator):
        result = validator.reconcile([vision(total=5.06, lines=()), structured(5.06)], Category.SALES)

        assert result.engine == Engine.STRUCTURED
        assert result.metadata["selection"] == "structured_high_confidence"
        assert result.confidence == pytest.approx(0.7 * 0.95 + 0.3 * 1.0)

    def test_agreeing_structured_source_raises_confidence(self, validator):
        result = validator.reconcile([vision(), structured(111.36, confidence=0.8)], Category.PURCHASES)

        assert result.engine == Engine.VISION
        assert result.confidence == pytest.approx(0.7 * 0.85 + 0.3 * 0.9)
        assert Flag.NEEDS_REVIEW not in result.flags

    def test_best_remaining_when_vision_is_ambiguous(self, validator):
        ambiguous = vision(total=10.0, lines=(), confidence=0.5,
                           diagnostic=Diagnostic.AMBIGUOUS_EXTRACTION)
        fallback = FallbackCandidate(stated_total=10.0, confidence=0.3, reason="ambiguous_extraction")

        result = validator.reconcile([ambiguous, fallback], Category.PURCHASES)

        assert result.engine == Engine.VISION
        assert result.metadata["selection"] == "best_remaining"
        assert result.confidence == pytest.approx(0.7 * 0.5 + 0.3 * 0.7)
        assert Flag.LOW_CONFIDENCE in result.flags

    def test_fallback_only(self, validator):
        fallback = FallbackCandidate(stated_total=4.6, confidence=0.3, reason="no_content")

        result = validator.reconcile([fallback], Category.PURCHASES)

        assert result.engine == Engine.FALLBACK
        assert result.purchase_amounts == (4.6,)
        assert Flag.FALLBACK_USED in result.flags
        assert not result.compliant

    def test_line_items_without_total_drop_zero_lines(self, validator):
        candidate = vision(total=None, lines=(4.6, 0.0, 1.35), confidence=0.75)

        result = validator.reconcile([candidate], Category.PURCHASES)

        assert result.purchase_amounts == (4.6, 1.35)
        assert result.confidence == pytest.approx(0.75)


class TestDisagreement:
    """Review flags and confidence when sources differ."""

    def test_disagreeing_sources_need_review(self, validator):
        candidates = [structured(5.06), vision(total=12.0, lines=())]

        result = validator.reconcile(candidates, Category.SALES)

        assert result.engine == Engine.STRUCTURED
        assert result.sales_amounts == (5.06,)
        assert result.confidence == pytest.approx(0.475)
        assert Flag.SOURCE_DISAGREEMENT in result.flags
        assert result.needs_review
        assert not result.compliant
        assert len(result.candidates) == 2
        assert result.metadata["disagreement"]["other_totals"] == {"vision": 12.0}

    def test_disagreement_respects_confidence_floor(self, validator):
        low = structured(5.06, confidence=0.9)
        other = FallbackCandidate(stated_total=9.0, confidence=0.3)
        validator.disagreement_penalty = 0.1

        result = validator.reconcile([low, other], Category.SALES)

        assert result.confidence == pytest.approx(0.2)

    @pytest.mark.parametrize("a, b, expected", [
        (5.00, 5.04, True),
        (5.00, 5.10, False),
        (100.00, 100.90, True),
        (100.00, 102.00, False),
    ])
    def test_tolerance(self, validator, a, b, expected):
        assert validator.agrees(a, b) is expected


class TestEdgeCases:

    def test_no_usable_candidates(self, validator):
        empty = vision(total=None, lines=(), confidence=0.0, diagnostic=Diagnostic.NO_TAX_DATA)

        result = validator.reconcile([empty], Category.PURCHASES)

        assert result.confidence == 0.0
        assert result.total == 0.0
        assert Flag.NO_SOURCES in result.flags
        assert result.needs_review
        assert result.metadata["selection"] == "none"

    def test_no_candidates_at_all(self, validator):
        result = validator.reconcile([], Category.OTHER)

        assert result.engine == Engine.FALLBACK
        assert Flag.NO_SOURCES in result.flags

    def test_unknown_candidate_type(self, validator):
        with pytest.raises(ReconciliationError):
            validator.reconcile([object()], Category.SALES)

    def test_invalid_rate_is_flagged(self, validator):
        result = validator.reconcile([vision(rates=(17.0,))], Category.PURCHASES)

        assert Flag.INVALID_RATE in result.flags
        assert result.metadata["invalid_rates"] == [17.0]
        assert not result.compliant

    def test_unknown_category_is_rejected(self, validator):
        with pytest.raises(ValueError):
            validator.reconcile([vision()], "expenses")
