"""
Response Parser Module.

Turns raw model output into candidate VAT amounts. Structured payloads
(JSON, optionally inside a code fence, or a fenced YAML mapping) are read
first; otherwise the text is scanned line by line:

    - currency amounts: symbol or ISO code next to a number
    - total-VAT lines ("Total VAT", "Total Amount VAT", "VAT Total")
      give the stated total; other VAT lines give line items
    - "Confidence: 92%" style hints
    - VAT rates and category labels (standard/reduced/zero/exempt,
      including receipt shorthands STD, MIN and NIL)

Every response gets a Diagnostic: no_content, no_tax_data,
ambiguous_extraction or clean_extraction. The parser is a pure function
of its input text.

Author: ML Engineering Team
"""

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from config import get_config
from vat_extraction.structured_parser.normalizers import AmountNormalizer
from vat_extraction.utils.exceptions import ParseError
from vat_extraction.utils.logger import get_logger

from .extraction_result import (
    Diagnostic,
    FallbackCandidate,
    VisionCandidate,
    clamp_confidence,
)

# Initialize module logger
logger = get_logger(__name__)


# =============================================================================
# PATTERNS
# =============================================================================

_CURRENCY = r'(?:€|£|\$|EUR|GBP|USD)'
_NUMBER = r'\d{1,3}(?:[,.]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?'

CURRENCY_AMOUNT_RE = re.compile(
    rf'(?P<neg>-\s?)?{_CURRENCY}\s?(?P<pre>-?(?:{_NUMBER}))(?![\d%])'
    rf'|(?<![\d.,])(?P<post>{_NUMBER})\s?{_CURRENCY}(?![A-Za-z])(?!\s?-?\d)',
    re.IGNORECASE,
)
# Bare decimals are accepted on VAT lines only
BARE_AMOUNT_RE = re.compile(
    r'(?<![\d.,%])(\d{1,3}(?:,\d{3})+\.\d{2}|\d{1,3}(?:\.\d{3})+,\d{2}|\d+[.,]\d{2})(?![\d%]|[.,]\d)'
)
CURRENCY_SYMBOL_RE = re.compile(_CURRENCY, re.IGNORECASE)

TAX_TOKEN_RE = re.compile(r'\b(?:vat|tax|gst|tva|mwst|iva)\b', re.IGNORECASE)
NEGATED_TAX_RE = re.compile(
    r'\bno\s+(?:\w+\s+){0,2}?(?:vat|tax)\b(?:\s+(?:data|information|amounts?|found|lines?))*'
    r'|\b(?:vat|tax)\s+(?:is\s+|was\s+)?not\s+(?:found|present|shown|applicable|detected|listed)'
    r'|\b(?:does|did)\s+not\s+(?:contain|include|show|list)\s+(?:any\s+)?(?:vat|tax)\b'
    r'|\bwithout\s+(?:any\s+)?(?:vat|tax)\b',
    re.IGNORECASE,
)
TOTAL_VAT_RE = re.compile(
    r'\btotal\s+(?:amount\s+)?(?:of\s+)?(?:vat|tax)\b'
    r'|\b(?:vat|tax)\s+(?:amount\s+)?total\b',
    re.IGNORECASE,
)
NON_TAX_LINE_RE = re.compile(
    r'\b(?:excl|excluding|incl|including|net|gross|subtotal|sub-total|before)\b\.?',
    re.IGNORECASE,
)
CONFIDENCE_RE = re.compile(
    r'confidence(?:\s+(?:level|score))?\s*(?:[:=]|is|of)?\s*(?:about\s+|approximately\s+)?'
    r'(?P<a>\d{1,3}(?:\.\d+)?)\s*(?P<pa>%)?'
    r'|(?P<b>\d{1,3}(?:\.\d+)?)\s*%\s+confiden\w*',
    re.IGNORECASE,
)
RATE_RE = re.compile(r'(?<![\d.,])(\d{1,2}(?:[.,]\d{1,2})?)\s?%')
STD_RATE_RE = re.compile(r'\bSTD\s?(\d{1,2}(?:\.\d{1,2})?)\b', re.IGNORECASE)

CATEGORY_PATTERNS = [
    ('standard_rate', re.compile(r'\b(?:standard|std)', re.IGNORECASE)),
    ('reduced_rate', re.compile(r'\b(?:reduced|min)\b|\bsecond\s+reduced', re.IGNORECASE)),
    ('zero_rate', re.compile(r'\bzero[- ]?(?:rate|rated)?\b|\bnil\b', re.IGNORECASE)),
    ('exempt', re.compile(r'\bexempt', re.IGNORECASE)),
]

CODE_FENCE_RE = re.compile(r'```(?P<lang>[a-zA-Z]*)\s*\n(?P<body>.*?)```', re.DOTALL)

# Normalised payload keys
TOTAL_KEYS = {
    'total_vat', 'vat_total', 'total_tax', 'tax_total', 'total_amount_vat',
    'total_vat_amount', 'vat_total_amount',
}
LINE_KEYS = {
    'vat_lines', 'tax_lines', 'lines', 'line_items', 'vat_amounts', 'tax_amounts',
    'vat_breakdown', 'breakdown', 'items',
}
SINGLE_AMOUNT_KEYS = {'vat_amount', 'tax_amount', 'vat'}
CONFIDENCE_KEYS = {'confidence', 'confidence_score', 'confidence_level'}
CATEGORY_KEYS = {'tax_categories', 'categories', 'vat_categories'}

# Diagnostics that count as a parse failure
PARSE_FAILURE_DIAGNOSTICS = frozenset({Diagnostic.NO_CONTENT, Diagnostic.AMBIGUOUS_EXTRACTION})


def _key(name: Any) -> str:
    return re.sub(r'[\s\-]+', '_', str(name).strip().lower())


def _rate_category(rate: float) -> Optional[str]:
    if rate == 0:
        return 'zero_rate'
    if rate >= 20:
        return 'standard_rate'
    if rate > 0:
        return 'reduced_rate'
    return None


@dataclass
class ParsedResponse:
    """
    Interpretation of one model response.

    Attributes:
        diagnostic: Quality classification.
        confidence: Heuristic or explicit confidence in [0, 1].
        line_amounts: VAT line items in order of appearance.
        stated_total: Explicitly labelled combined VAT total.
        explicit_confidence: Confidence stated in the text, as a fraction.
        tax_categories: Category labels seen.
        rates: VAT rate percentages seen.
        currency: First currency marker seen.
        structured: Whether a structured payload was parsed.
        conflicting_totals: Distinct stated totals when more than one.
        stray_amounts: Currency amounts outside VAT lines.
        rejected_values: Payload amounts that are not finite non-negative numbers.
    """
    diagnostic: Diagnostic
    confidence: float = 0.0
    line_amounts: List[float] = field(default_factory=list)
    stated_total: Optional[float] = None
    explicit_confidence: Optional[float] = None
    tax_categories: List[str] = field(default_factory=list)
    rates: List[float] = field(default_factory=list)
    currency: Optional[str] = None
    structured: bool = False
    conflicting_totals: List[float] = field(default_factory=list)
    stray_amounts: List[float] = field(default_factory=list)
    rejected_values: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return self.diagnostic == Diagnostic.CLEAN_EXTRACTION

    @property
    def has_amounts(self) -> bool:
        return bool(self.line_amounts) or self.stated_total is not None


class ResponseParser:
    """
    Pattern-based parser for raw model text.

    Attributes:
        min_content_chars: Responses shorter than this are no_content.
        clean_with_total: Confidence for a clean response with a stated total.
        clean_lines: Confidence for a clean response with line items only.
        ambiguous_cap: Upper bound of confidence for ambiguous responses.

    Example:
        >>> parser = ResponseParser()
        >>> parsed = parser.parse("VAT STD23 €109.85\\nTotal Amount VAT: €111.36")
        >>> parsed.diagnostic, parsed.stated_total
        (<Diagnostic.CLEAN_EXTRACTION: 'clean_extraction'>, 111.36)
    """

    def __init__(
        self,
        min_content_chars: Optional[int] = None,
        clean_with_total: Optional[float] = None,
        clean_lines: Optional[float] = None,
        ambiguous_cap: Optional[float] = None
    ) -> None:
        self.min_content_chars = int(
            min_content_chars if min_content_chars is not None
            else get_config("response_parser.min_content_chars", 10)
        )
        self.clean_with_total = clean_with_total or get_config(
            "response_parser.confidence.clean_with_total", 0.85
        )
        self.clean_lines = clean_lines or get_config(
            "response_parser.confidence.clean_lines", 0.75
        )
        self.ambiguous_cap = ambiguous_cap or get_config(
            "response_parser.confidence.ambiguous_cap", 0.5
        )
        self.amounts = AmountNormalizer()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def parse(self, text: Optional[str]) -> ParsedResponse:
        """
        Parse raw model text.

        Args:
            text: Raw response, possibly None or empty.

        Returns:
            ParsedResponse with diagnostic and confidence set.
        """
        stripped = (text or "").strip()
        if len(stripped) < self.min_content_chars:
            return ParsedResponse(diagnostic=Diagnostic.NO_CONTENT)

        payload = self._structured_payload(stripped)
        if payload is not None:
            parsed = self._parse_payload(payload)
            if parsed is not None:
                logger.debug(f"Parsed structured payload: {parsed.diagnostic.value}")
                return parsed

        parsed = self._parse_free_text(stripped)
        logger.debug(
            f"Parsed free text: {parsed.diagnostic.value} "
            f"(lines={len(parsed.line_amounts)}, total={parsed.stated_total})"
        )
        return parsed

    def raise_for_diagnostic(self, parsed: ParsedResponse) -> None:
        """
        Reject a response the parser could not read.

        Raises:
            ParseError: If the diagnostic is no_content or ambiguous_extraction.
        """
        if parsed.diagnostic not in PARSE_FAILURE_DIAGNOSTICS:
            return
        reason = parsed.diagnostic.value
        if parsed.rejected_values:
            reason = f"{reason}, unusable amounts {parsed.rejected_values}"
        raise ParseError(reason, diagnostic=parsed.diagnostic.value)

    def to_vision_candidate(
        self,
        parsed: ParsedResponse,
        template_id: str,
        raw_response: str,
        usage: Optional[Dict[str, Any]] = None
    ) -> VisionCandidate:
        return VisionCandidate(
            line_amounts=tuple(parsed.line_amounts),
            stated_total=parsed.stated_total,
            confidence=parsed.confidence,
            rates=tuple(parsed.rates),
            template_id=template_id,
            diagnostic=parsed.diagnostic,
            tax_categories=tuple(parsed.tax_categories),
            explicit_confidence=parsed.explicit_confidence,
            raw_response=raw_response,
            usage=dict(usage or {}),
        )

    def fallback_candidate(self, text: str, reason: str, cap: float) -> FallbackCandidate:
        """
        Deterministic scan of a document's own text layer.

        Confidence is capped at `cap`. Text that is not at least a clean
        extraction yields a candidate without amounts.
        """
        parsed = self.parse(text)
        if parsed.is_clean:
            confidence = min(cap, parsed.confidence)
            line_amounts, stated_total = tuple(parsed.line_amounts), parsed.stated_total
        else:
            confidence, line_amounts, stated_total = 0.0, (), None
        return FallbackCandidate(
            line_amounts=line_amounts,
            stated_total=stated_total,
            confidence=confidence,
            rates=tuple(parsed.rates),
            reason=reason,
            source_text_chars=len(text or ""),
        )

    # -------------------------------------------------------------------------
    # Structured payloads
    # -------------------------------------------------------------------------

    def _structured_payload(self, text: str) -> Optional[Dict[str, Any]]:
        fence = CODE_FENCE_RE.search(text)
        if fence:
            body = fence.group('body').strip()
            lang = fence.group('lang').lower()
            loaded = self._load_json(body)
            if loaded is None and lang in ('yaml', 'yml'):
                loaded = self._load_yaml(body)
            if isinstance(loaded, dict):
                return loaded

        start, end = text.find('{'), text.rfind('}')
        if start >= 0 and end > start:
            loaded = self._load_json(text[start:end + 1])
            if isinstance(loaded, dict):
                return loaded
        return None

    @staticmethod
    def _load_json(body: str) -> Any:
        try:
            return json.loads(body)
        except (json.JSONDecodeError, ValueError):
            return None

    @staticmethod
    def _load_yaml(body: str) -> Any:
        try:
            return yaml.safe_load(body)
        except yaml.YAMLError:
            return None

    def _parse_payload(self, payload: Dict[str, Any]) -> Optional[ParsedResponse]:
        data = {_key(k): v for k, v in payload.items()}
        recognised = set(data) & (TOTAL_KEYS | LINE_KEYS | SINGLE_AMOUNT_KEYS)
        if not recognised:
            return None

        parsed = ParsedResponse(diagnostic=Diagnostic.NO_TAX_DATA, structured=True)
        parsed.currency = data.get('currency')

        for key in TOTAL_KEYS:
            if data.get(key) is not None:
                parsed.stated_total = self._payload_amount(data[key], parsed)
                break

        for key in LINE_KEYS:
            if isinstance(data.get(key), list):
                for item in data[key]:
                    self._payload_line(item, parsed)
                break
        else:
            for key in SINGLE_AMOUNT_KEYS:
                if data.get(key) is not None:
                    amount = self._payload_amount(data[key], parsed)
                    if amount is not None:
                        parsed.line_amounts.append(amount)
                    break

        for key in CONFIDENCE_KEYS:
            if data.get(key) is not None:
                parsed.explicit_confidence = self._as_fraction(data[key])
                break

        for key in CATEGORY_KEYS:
            if isinstance(data.get(key), list):
                for label in data[key]:
                    self._add_category(parsed, self._category_of(str(label)))
                break

        for rate in parsed.rates:
            self._add_category(parsed, _rate_category(rate))

        if parsed.rejected_values:
            logger.warning(f"Payload carries unusable amounts: {parsed.rejected_values}")
            parsed.diagnostic = Diagnostic.AMBIGUOUS_EXTRACTION
        elif parsed.has_amounts:
            parsed.diagnostic = Diagnostic.CLEAN_EXTRACTION
        self._downgrade_if_unsure(parsed)
        self._score(parsed)
        return parsed

    def _payload_amount(self, raw: Any, parsed: ParsedResponse) -> Optional[float]:
        """Amount of a payload field; unusable values are kept in rejected_values."""
        amount = self._non_negative(self.amounts.to_float(raw))
        if amount is None:
            parsed.rejected_values.append(str(raw))
        return amount

    def _payload_line(self, item: Any, parsed: ParsedResponse) -> None:
        if isinstance(item, dict):
            item = {_key(k): v for k, v in item.items()}
            amount = None
            for key in ('amount', 'vat_amount', 'vat', 'tax', 'value'):
                if item.get(key) is not None:
                    amount = self._payload_amount(item[key], parsed)
                    break
            rate = item.get('rate') if item.get('rate') is not None else item.get('vat_rate')
            if rate is not None:
                rate_value = self.amounts.to_float(str(rate).replace('%', ''))
                if rate_value is not None and math.isfinite(rate_value):
                    parsed.rates.append(rate_value)
            for key in ('category', 'label', 'description'):
                if item.get(key):
                    self._add_category(parsed, self._category_of(str(item[key])))
        else:
            amount = self._payload_amount(item, parsed)
        if amount is not None:
            parsed.line_amounts.append(amount)

    # -------------------------------------------------------------------------
    # Free text
    # -------------------------------------------------------------------------

    def _parse_free_text(self, text: str) -> ParsedResponse:
        parsed = ParsedResponse(diagnostic=Diagnostic.AMBIGUOUS_EXTRACTION)
        totals: List[float] = []
        currency_seen = False
        tax_seen = False

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue

            conf_match = CONFIDENCE_RE.search(line)
            if conf_match:
                if parsed.explicit_confidence is None:
                    parsed.explicit_confidence = self._confidence_from_match(conf_match)
                line = (line[:conf_match.start()] + line[conf_match.end():]).strip()
                if not line:
                    continue

            symbol = CURRENCY_SYMBOL_RE.search(line)
            if symbol and parsed.currency is None:
                parsed.currency = self._currency_code(symbol.group(0))

            amounts = self._currency_amounts(line)
            currency_seen = currency_seen or bool(amounts)

            affirmative = NEGATED_TAX_RE.sub(' ', line)
            is_tax_line = bool(TAX_TOKEN_RE.search(affirmative))
            tax_seen = tax_seen or is_tax_line
            if not is_tax_line:
                parsed.stray_amounts.extend(amounts)
                continue

            if not amounts:
                amounts = self._bare_amounts(line)

            self._collect_rates(line, parsed)
            self._add_category(parsed, self._category_of(line))

            if TOTAL_VAT_RE.search(line):
                if amounts:
                    totals.append(amounts[-1])
            elif NON_TAX_LINE_RE.search(line):
                parsed.stray_amounts.extend(amounts)
            elif amounts:
                parsed.line_amounts.append(amounts[-1])

        for rate in parsed.rates:
            self._add_category(parsed, _rate_category(rate))

        distinct_totals = sorted(set(totals))
        if distinct_totals:
            parsed.stated_total = totals[-1]
        if len(distinct_totals) > 1:
            parsed.conflicting_totals = distinct_totals

        if not currency_seen and not tax_seen:
            parsed.diagnostic = Diagnostic.NO_TAX_DATA
        elif tax_seen and not parsed.conflicting_totals and parsed.has_amounts:
            parsed.diagnostic = Diagnostic.CLEAN_EXTRACTION
        else:
            parsed.diagnostic = Diagnostic.AMBIGUOUS_EXTRACTION

        self._downgrade_if_unsure(parsed)
        self._score(parsed)
        return parsed

    def _downgrade_if_unsure(self, parsed: ParsedResponse) -> None:
        """A clean response whose stated confidence is below the ambiguity cap is ambiguous."""
        if (parsed.diagnostic == Diagnostic.CLEAN_EXTRACTION
                and parsed.explicit_confidence is not None
                and parsed.explicit_confidence < self.ambiguous_cap):
            parsed.diagnostic = Diagnostic.AMBIGUOUS_EXTRACTION

    def _currency_amounts(self, line: str) -> List[float]:
        amounts = []
        for match in CURRENCY_AMOUNT_RE.finditer(line):
            if match.group('neg'):
                continue
            raw = match.group('pre') or match.group('post')
            value = self._non_negative(self.amounts.to_float(raw))
            if value is not None:
                amounts.append(value)
        return amounts

    def _bare_amounts(self, line: str) -> List[float]:
        amounts = []
        for match in BARE_AMOUNT_RE.finditer(line):
            value = self._non_negative(self.amounts.to_float(match.group(1)))
            if value is not None:
                amounts.append(value)
        return amounts

    def _collect_rates(self, line: str, parsed: ParsedResponse) -> None:
        found = [m.group(1) for m in RATE_RE.finditer(line)]
        found += [m.group(1) for m in STD_RATE_RE.finditer(line)]
        for raw in found:
            rate = self.amounts.to_float(raw.replace(',', '.'))
            if rate is not None and rate not in parsed.rates:
                parsed.rates.append(rate)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _score(self, parsed: ParsedResponse) -> None:
        if parsed.diagnostic in (Diagnostic.NO_CONTENT, Diagnostic.NO_TAX_DATA):
            parsed.confidence = 0.0
            return

        if parsed.diagnostic == Diagnostic.CLEAN_EXTRACTION:
            heuristic = (
                self.clean_with_total if parsed.stated_total is not None
                else self.clean_lines
            )
            confidence = (
                parsed.explicit_confidence
                if parsed.explicit_confidence is not None else heuristic
            )
        else:
            base = parsed.explicit_confidence if parsed.explicit_confidence is not None else self.ambiguous_cap
            confidence = min(self.ambiguous_cap, base) if parsed.has_amounts else 0.0

        parsed.confidence = clamp_confidence(confidence)

    @staticmethod
    def _confidence_from_match(match) -> Optional[float]:
        if match.group('b') is not None:
            return clamp_confidence(float(match.group('b')) / 100.0)
        value = float(match.group('a'))
        if match.group('pa') or value > 1.0:
            value = value / 100.0
        return clamp_confidence(value)

    @staticmethod
    def _as_fraction(value: Any) -> Optional[float]:
        try:
            number = float(str(value).replace('%', '').strip())
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        if number > 1.0:
            number = number / 100.0
        return clamp_confidence(number)

    @staticmethod
    def _non_negative(value: Optional[float]) -> Optional[float]:
        if value is None or not math.isfinite(value) or value < 0:
            return None
        return round(value, 2)

    @staticmethod
    def _currency_code(marker: str) -> str:
        return {'€': 'EUR', '£': 'GBP', '$': 'USD'}.get(marker, marker.upper())

    @staticmethod
    def _category_of(text: str) -> Optional[str]:
        for name, pattern in CATEGORY_PATTERNS:
            if pattern.search(text):
                return name
        return None

    @staticmethod
    def _add_category(parsed: ParsedResponse, category: Optional[str]) -> None:
        if category and category not in parsed.tax_categories:
            parsed.tax_categories.append(category)


def extract_currency_amounts(text: str) -> List[float]:
    """All non-negative currency amounts in a text, in order of appearance."""
    return ResponseParser(min_content_chars=0)._currency_amounts(text or "")


__all__ = [
    'ResponseParser',
    'ParsedResponse',
    'Diagnostic',
    'extract_currency_amounts',
]
