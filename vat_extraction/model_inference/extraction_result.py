"""
Extraction Result Data Classes.

This module defines the immutable records passed between the extraction
engines, the multi-source validator, the cache and the learning loop:

    - SourceCandidate and its engine-specific variants (structured,
      vision, fallback), produced once per engine run
    - ExtractionResult, the reconciled canonical answer for a document

Amounts are non-negative floats rounded to cents. Confidence is always in
[0, 1]; out-of-range values are clamped on construction.

Author: ML Engineering Team
"""

import json
import math
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple

from vat_extraction.utils.helpers import round_amount, utc_now

# Tolerance for "line items add up to the stated total"
LINE_SUM_TOLERANCE = 0.02


class Engine(str, Enum):
    """Engine that produced a candidate or result."""

    STRUCTURED = "structured"
    VISION = "vision"
    FALLBACK = "fallback"


class Diagnostic(str, Enum):
    """Classification of a model response by the response parser."""

    NO_CONTENT = "no_content"
    NO_TAX_DATA = "no_tax_data"
    AMBIGUOUS_EXTRACTION = "ambiguous_extraction"
    CLEAN_EXTRACTION = "clean_extraction"


class Flag:
    """Review flags attached to results."""

    NEEDS_REVIEW = "NEEDS_REVIEW"
    SOURCE_DISAGREEMENT = "SOURCE_DISAGREEMENT"
    NO_SOURCES = "NO_SOURCES"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    INVALID_RATE = "INVALID_RATE"
    FALLBACK_USED = "FALLBACK_USED"


def clamp_confidence(value: Any) -> float:
    """Clamp a confidence to [0, 1]; NaN and None become 0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def _amounts(values: Iterable[Any], name: str) -> Tuple[float, ...]:
    result = []
    for value in values or ():
        amount = float(value)
        if not math.isfinite(amount) or amount < 0:
            raise ValueError(f"{name} must be non-negative amounts, got {value!r}")
        result.append(round_amount(amount))
    return tuple(result)


# =============================================================================
# SOURCE CANDIDATES
# =============================================================================

@dataclass(frozen=True)
class SourceCandidate:
    """
    Amounts proposed by one extraction engine.

    Attributes:
        line_amounts: Individual tax lines (e.g. one per VAT rate).
        stated_total: An explicit combined total printed on the document.
        confidence: Engine confidence in [0, 1].
        rates: VAT rate percentages seen alongside the amounts.
    """
    engine: ClassVar[Engine]

    line_amounts: Tuple[float, ...] = ()
    stated_total: Optional[float] = None
    confidence: float = 0.0
    rates: Tuple[float, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'line_amounts', _amounts(self.line_amounts, 'line_amounts'))
        if self.stated_total is not None:
            object.__setattr__(
                self, 'stated_total', _amounts([self.stated_total], 'stated_total')[0]
            )
        object.__setattr__(self, 'confidence', clamp_confidence(self.confidence))
        object.__setattr__(self, 'rates', tuple(float(r) for r in self.rates or ()))

    @property
    def has_amounts(self) -> bool:
        return bool(self.line_amounts) or self.stated_total is not None

    @property
    def line_sum(self) -> float:
        return round_amount(sum(self.line_amounts))

    @property
    def total(self) -> float:
        """Explicit combined total when present, otherwise the sum of lines."""
        if self.stated_total is not None:
            return self.stated_total
        return self.line_sum

    @property
    def lines_match_total(self) -> bool:
        """True when line items exist and add up to the stated total."""
        return (
            self.stated_total is not None
            and bool(self.line_amounts)
            and abs(self.line_sum - self.stated_total) <= LINE_SUM_TOLERANCE
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, tuple):
                data[key] = list(value)
        data['engine'] = self.engine.value
        return data

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(total={self.total:.2f}, "
            f"lines={len(self.line_amounts)}, confidence={self.confidence:.2f})"
        )


@dataclass(frozen=True, repr=False)
class StructuredCandidate(SourceCandidate):
    """Candidate read from a tabular document by column heuristics."""
    engine: ClassVar[Engine] = Engine.STRUCTURED

    tax_column: str = ""
    match_strength: str = "heuristic"
    decimal_separator: str = "."
    date_columns: Tuple[str, ...] = ()
    rows_used: int = 0


@dataclass(frozen=True, repr=False)
class VisionCandidate(SourceCandidate):
    """Candidate parsed from a vision model response."""
    engine: ClassVar[Engine] = Engine.VISION

    template_id: str = ""
    diagnostic: Diagnostic = Diagnostic.NO_CONTENT
    tax_categories: Tuple[str, ...] = ()
    explicit_confidence: Optional[float] = None
    raw_response: str = ""
    usage: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(self, 'diagnostic', Diagnostic(self.diagnostic))
        object.__setattr__(self, 'tax_categories', tuple(self.tax_categories or ()))


@dataclass(frozen=True, repr=False)
class FallbackCandidate(SourceCandidate):
    """Candidate from deterministic text scanning when the model output is unusable."""
    engine: ClassVar[Engine] = Engine.FALLBACK

    reason: str = ""
    source_text_chars: int = 0


CANDIDATE_TYPES = {
    Engine.STRUCTURED: StructuredCandidate,
    Engine.VISION: VisionCandidate,
    Engine.FALLBACK: FallbackCandidate,
}


def candidate_from_dict(data: Dict[str, Any]) -> SourceCandidate:
    """Rebuild a candidate from its to_dict() form."""
    data = dict(data)
    cls = CANDIDATE_TYPES[Engine(data.pop('engine'))]
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = tuple(value) if isinstance(value, list) else value
    return cls(**kwargs)


# =============================================================================
# EXTRACTION RESULT
# =============================================================================

@dataclass(frozen=True)
class ExtractionResult:
    """
    Reconciled VAT extraction for one document.

    Attributes:
        sales_amounts: VAT amounts on the sales side, in document order.
        purchase_amounts: VAT amounts on the purchase side.
        confidence: Overall confidence in [0, 1].
        engine: Engine whose candidate was selected.
        raw_response: Raw engine output kept for audit and learning.
        compliant: Whether the result passes compliance checks.
        flags: Review flags such as NEEDS_REVIEW.
        candidates: Every source candidate considered.
        metadata: Free-form details (template id, latency, attempts).
        extracted_at: ISO-8601 timestamp.

    Example:
        >>> result = ExtractionResult(
        ...     sales_amounts=(111.36,), purchase_amounts=(),
        ...     confidence=0.9, engine=Engine.VISION
        ... )
        >>> result.total
        111.36
    """
    sales_amounts: Tuple[float, ...] = ()
    purchase_amounts: Tuple[float, ...] = ()
    confidence: float = 0.0
    engine: Engine = Engine.FALLBACK
    raw_response: Optional[str] = None
    compliant: bool = False
    flags: Tuple[str, ...] = ()
    candidates: Tuple[SourceCandidate, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    extracted_at: str = field(default_factory=lambda: utc_now().isoformat(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'sales_amounts', _amounts(self.sales_amounts, 'sales_amounts'))
        object.__setattr__(
            self, 'purchase_amounts', _amounts(self.purchase_amounts, 'purchase_amounts')
        )
        object.__setattr__(self, 'confidence', clamp_confidence(self.confidence))
        object.__setattr__(self, 'engine', Engine(self.engine))
        object.__setattr__(self, 'flags', tuple(dict.fromkeys(self.flags or ())))
        object.__setattr__(self, 'candidates', tuple(self.candidates or ()))

    @property
    def sales_total(self) -> float:
        return round_amount(sum(self.sales_amounts))

    @property
    def purchase_total(self) -> float:
        return round_amount(sum(self.purchase_amounts))

    @property
    def total(self) -> float:
        return round_amount(self.sales_total + self.purchase_total)

    @property
    def needs_review(self) -> bool:
        return Flag.NEEDS_REVIEW in self.flags

    @property
    def template_id(self) -> Optional[str]:
        """Prompt template behind the vision candidate, if any."""
        if self.metadata.get('template_id'):
            return self.metadata['template_id']
        for candidate in self.candidates:
            if isinstance(candidate, VisionCandidate) and candidate.template_id:
                return candidate.template_id
        return None

    def with_amounts(
        self,
        sales_amounts: Iterable[float] = (),
        purchase_amounts: Iterable[float] = (),
        compliant: Optional[bool] = None
    ) -> 'ExtractionResult':
        """
        Build a user-corrected copy of this result.

        The copy keeps the engine and raw response for learning, carries
        full confidence and no review flags. The compliance flag is kept
        unless the correction states it.
        """
        metadata = dict(self.metadata)
        metadata['corrected'] = True
        return replace(
            self,
            sales_amounts=tuple(sales_amounts),
            purchase_amounts=tuple(purchase_amounts),
            confidence=1.0,
            compliant=self.compliant if compliant is None else bool(compliant),
            flags=(),
            metadata=metadata,
            extracted_at=utc_now().isoformat(),
        )

    def estimated_size(self) -> int:
        """Approximate in-memory footprint in bytes (two bytes per JSON char)."""
        return len(self.to_json()) * 2

    def to_dict(self, include_candidates: bool = True) -> Dict[str, Any]:
        """
        Convert to a JSON-safe dictionary.

        Args:
            include_candidates: Whether to include the per-source candidates.
        """
        data = {
            'sales_amounts': list(self.sales_amounts),
            'purchase_amounts': list(self.purchase_amounts),
            'confidence': round(self.confidence, 4),
            'engine': self.engine.value,
            'compliant': self.compliant,
            'flags': list(self.flags),
            'total': self.total,
            'raw_response': self.raw_response,
            'metadata': self.metadata,
            'extracted_at': self.extracted_at,
        }
        if include_candidates:
            data['candidates'] = [c.to_dict() for c in self.candidates]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtractionResult':
        """
        Create an ExtractionResult from a dictionary.

        Unknown keys (such as the derived 'total') are ignored.
        """
        kwargs = {
            'sales_amounts': tuple(data.get('sales_amounts') or ()),
            'purchase_amounts': tuple(data.get('purchase_amounts') or ()),
            'confidence': data.get('confidence', 0.0),
            'engine': Engine(data.get('engine', Engine.FALLBACK.value)),
            'raw_response': data.get('raw_response'),
            'compliant': bool(data.get('compliant', False)),
            'flags': tuple(data.get('flags') or ()),
            'candidates': tuple(
                candidate_from_dict(c) for c in data.get('candidates') or ()
            ),
            'metadata': dict(data.get('metadata') or {}),
        }
        if data.get('extracted_at'):
            kwargs['extracted_at'] = data['extracted_at']
        return cls(**kwargs)

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def __repr__(self) -> str:
        return (
            f"ExtractionResult(engine='{self.engine.value}', total={self.total:.2f}, "
            f"confidence={self.confidence:.2f}, flags={list(self.flags)})"
        )


def empty_result(flags: Iterable[str] = (), **metadata: Any) -> ExtractionResult:
    """Zero-confidence fallback result with no amounts."""
    return ExtractionResult(
        engine=Engine.FALLBACK,
        confidence=0.0,
        flags=tuple(flags),
        metadata=dict(metadata),
    )


__all__ = [
    'Engine',
    'Diagnostic',
    'Flag',
    'SourceCandidate',
    'StructuredCandidate',
    'VisionCandidate',
    'FallbackCandidate',
    'CANDIDATE_TYPES',
    'candidate_from_dict',
    'ExtractionResult',
    'empty_result',
    'clamp_confidence',
    'LINE_SUM_TOLERANCE',
]
