"""
Tests for ResponseParser
=========================
Diagnostics, amount reading and confidence of raw model output.
"""

import pytest

from tests.conftest import RECEIPT_TEXT
from vat_extraction.model_inference import Diagnostic, ResponseParser
from vat_extraction.model_inference.response_parser import extract_currency_amounts
from vat_extraction.utils.exceptions import ErrorCategory, ParseError


@pytest.fixture
def parser():
    return ResponseParser()


class TestFreeText:
    """Line-by-line parsing of prose and receipt-style answers."""

    def test_receipt_with_combined_total(self, parser):
        parsed = parser.parse(RECEIPT_TEXT)

        assert parsed.diagnostic == Diagnostic.CLEAN_EXTRACTION
        assert parsed.line_amounts == [1.51, 0.0, 109.85]
        assert parsed.stated_total == 111.36
        assert parsed.confidence == pytest.approx(0.85)
        assert parsed.currency == "EUR"
        assert 23.0 in parsed.rates
        assert set(parsed.tax_categories) >= {"reduced_rate", "zero_rate", "standard_rate"}

    def test_lines_only_use_line_confidence(self, parser):
        parsed = parser.parse("VAT 23%: €4.60\nVAT 13.5%: €1.35")

        assert parsed.is_clean
        assert parsed.stated_total is None
        assert parsed.line_amounts == [4.6, 1.35]
        assert parsed.rates == [23.0, 13.5]
        assert parsed.confidence == pytest.approx(0.75)

    def test_explicit_confidence_overrides_heuristic(self, parser):
        parsed = parser.parse("Total VAT: £12.00\nConfidence: 92%")

        assert parsed.is_clean
        assert parsed.explicit_confidence == pytest.approx(0.92)
        assert parsed.confidence == pytest.approx(0.92)

    def test_low_stated_confidence_downgrades_to_ambiguous(self, parser):
        parsed = parser.parse("Total VAT: £12.00\nConfidence: 30%")

        assert parsed.diagnostic == Diagnostic.AMBIGUOUS_EXTRACTION
        assert parsed.confidence == pytest.approx(0.30)

    def test_no_vat_found(self, parser):
        parsed = parser.parse("No VAT found on this document.")

        assert parsed.diagnostic == Diagnostic.NO_TAX_DATA
        assert parsed.confidence == 0.0
        assert not parsed.has_amounts

    def test_unrelated_prose_is_no_tax_data(self, parser):
        parsed = parser.parse("The image shows a photograph of a cat on a sofa.")

        assert parsed.diagnostic == Diagnostic.NO_TAX_DATA
        assert parsed.confidence == 0.0

    def test_conflicting_totals_are_ambiguous(self, parser):
        parsed = parser.parse("Total VAT: €10.00\nVAT total: €12.00")

        assert parsed.diagnostic == Diagnostic.AMBIGUOUS_EXTRACTION
        assert parsed.conflicting_totals == [10.0, 12.0]
        assert parsed.confidence <= 0.5

    def test_net_and_gross_lines_are_not_vat(self, parser):
        parsed = parser.parse(
            "Total excl. VAT: €100.00\nVAT 23%: €23.00\nTotal incl. VAT: €123.00"
        )

        assert parsed.line_amounts == [23.0]
        assert 100.0 in parsed.stray_amounts
        assert 123.0 in parsed.stray_amounts

    def test_amount_with_trailing_currency_code(self, parser):
        parsed = parser.parse("The VAT charged is 4,60 EUR in total.")

        assert parsed.line_amounts == [4.6]

    @pytest.mark.parametrize("text", [None, "", "   ", "VAT?"])
    def test_short_or_empty_is_no_content(self, parser, text):
        parsed = parser.parse(text)

        assert parsed.diagnostic == Diagnostic.NO_CONTENT
        assert parsed.confidence == 0.0


class TestStructuredPayloads:
    """JSON and fenced YAML answers."""

    def test_json_payload(self, parser):
        parsed = parser.parse(
            '{"vat_lines": [{"rate": 23, "amount": 4.60}, {"rate": "13.5%", "amount": "1.35"}],'
            ' "total_vat": 5.95, "currency": "EUR", "confidence": 90}'
        )

        assert parsed.structured
        assert parsed.is_clean
        assert parsed.line_amounts == [4.6, 1.35]
        assert parsed.stated_total == 5.95
        assert parsed.rates == [23.0, 13.5]
        assert parsed.confidence == pytest.approx(0.90)

    def test_json_inside_code_fence(self, parser):
        parsed = parser.parse('Here you go:\n```json\n{"total_vat": "€111.36"}\n```')

        assert parsed.stated_total == 111.36
        assert parsed.confidence == pytest.approx(0.85)

    def test_yaml_code_fence(self, parser):
        parsed = parser.parse("```yaml\nvat_amount: 4.60\nconfidence: 0.8\n```")

        assert parsed.line_amounts == [4.6]
        assert parsed.confidence == pytest.approx(0.8)

    def test_payload_without_amounts_is_no_tax_data(self, parser):
        parsed = parser.parse('{"vat_lines": [], "total_vat": null}')

        assert parsed.diagnostic == Diagnostic.NO_TAX_DATA
        assert parsed.confidence == 0.0

    def test_unrelated_json_falls_back_to_text(self, parser):
        parsed = parser.parse('{"merchant": "ACME"}\nVAT 23%: €4.60')

        assert not parsed.structured
        assert parsed.line_amounts == [4.6]

    @pytest.mark.parametrize("payload, rejected", [
        ('{"total_vat": NaN, "vat_lines": []}', ["nan"]),
        ('{"total_vat": Infinity}', ["inf"]),
        ('{"vat_lines": [{"amount": -Infinity}]}', ["-inf"]),
    ])
    def test_non_finite_amounts_are_rejected(self, parser, payload, rejected):
        parsed = parser.parse(payload)

        assert parsed.diagnostic == Diagnostic.AMBIGUOUS_EXTRACTION
        assert parsed.rejected_values == rejected
        assert not parsed.has_amounts
        assert parsed.confidence == 0.0
        candidate = parser.to_vision_candidate(parsed, "vat-json-v1", payload)
        assert candidate.total == 0.0

    def test_usable_amounts_survive_next_to_a_rejected_one(self, parser):
        parsed = parser.parse('{"vat_lines": [4.60, NaN], "total_vat": 4.60, "confidence": NaN}')

        assert parsed.diagnostic == Diagnostic.AMBIGUOUS_EXTRACTION
        assert parsed.line_amounts == [4.6]
        assert parsed.explicit_confidence is None
        assert parsed.confidence == pytest.approx(0.5)


class TestParseErrors:
    """Raising ParseError for unreadable responses."""

    def test_ambiguous_response_raises(self, parser):
        parsed = parser.parse('{"total_vat": NaN}')

        with pytest.raises(ParseError) as excinfo:
            parser.raise_for_diagnostic(parsed)

        assert excinfo.value.diagnostic == "ambiguous_extraction"
        assert excinfo.value.category == ErrorCategory.PARSE_ERROR
        assert "nan" in excinfo.value.message

    def test_no_content_raises(self, parser):
        with pytest.raises(ParseError):
            parser.raise_for_diagnostic(parser.parse("VAT?"))

    @pytest.mark.parametrize("text", [RECEIPT_TEXT, "No VAT found on this receipt."])
    def test_clean_or_no_tax_data_passes(self, parser, text):
        parser.raise_for_diagnostic(parser.parse(text))


class TestCandidates:
    """Conversion to source candidates."""

    def test_vision_candidate_carries_template_and_usage(self, parser):
        parsed = parser.parse(RECEIPT_TEXT)
        candidate = parser.to_vision_candidate(parsed, "vat-lines-v1", RECEIPT_TEXT, {"total_tokens": 42})

        assert candidate.template_id == "vat-lines-v1"
        assert candidate.total == 111.36
        assert candidate.lines_match_total
        assert candidate.raw_response == RECEIPT_TEXT
        assert candidate.usage == {"total_tokens": 42}

    def test_fallback_candidate_is_capped(self, parser):
        candidate = parser.fallback_candidate("VAT 23% EUR 4.60\nTotal VAT: EUR 4.60", "no_content", cap=0.3)

        assert candidate.stated_total == 4.6
        assert candidate.confidence == pytest.approx(0.3)
        assert candidate.reason == "no_content"

    def test_fallback_candidate_without_vat_text_is_empty(self, parser):
        candidate = parser.fallback_candidate("Thank you for shopping", "no_tax_data", cap=0.3)

        assert not candidate.has_amounts
        assert candidate.confidence == 0.0

    def test_parser_is_pure(self, parser):
        assert parser.parse(RECEIPT_TEXT) == parser.parse(RECEIPT_TEXT)


def test_extract_currency_amounts():
    assert extract_currency_amounts("Paid €12.50 and $3 plus 4.00 GBP") == [12.5, 3.0, 4.0]
    assert extract_currency_amounts("") == []
