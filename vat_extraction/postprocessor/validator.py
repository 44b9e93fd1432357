"""
Multi-Source Validator Module.

Reconciles the candidates produced by the structured parser, the vision
pipeline and the deterministic fallback into one ExtractionResult.

Selection policy, in priority order:
    1. A structured candidate at or above the high-confidence threshold.
    2. A vision candidate whose diagnostic is clean_extraction.
    3. The most confident remaining candidate with amounts.

An explicitly labelled combined total beats the sum of line items.
Candidates whose totals differ beyond tolerance flag the result for
review; all candidates stay on the result for audit.

Author: ML Engineering Team
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from config import get_config
from vat_extraction.documents import Category
from vat_extraction.model_inference.extraction_result import (
    Diagnostic,
    Engine,
    ExtractionResult,
    FallbackCandidate,
    Flag,
    SourceCandidate,
    StructuredCandidate,
    VisionCandidate,
)
from vat_extraction.utils.exceptions import ReconciliationError
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)

# Support given by an agreeing source of each engine
ENGINE_SUPPORT = {
    Engine.VISION: 1.0,
    Engine.STRUCTURED: 0.9,
    Engine.FALLBACK: 0.7,
}

# Tie-break order when confidences are equal
ENGINE_PRIORITY = {
    Engine.STRUCTURED: 3,
    Engine.VISION: 2,
    Engine.FALLBACK: 1,
}


class MultiSourceValidator:
    """
    Reconciles extraction candidates.

    Attributes:
        structured_high_confidence: Structured candidates at or above this win outright.
        abs_tolerance: Absolute disagreement tolerance (currency units).
        rel_tolerance: Relative disagreement tolerance.
        source_weight: Weight of the selected source's confidence when others agree.
        agreement_weight: Weight of the agreement term.
        disagreement_penalty: Multiplier applied on disagreement.
        confidence_floor: Disagreement never lowers confidence below this.
        consistency_bonus: Added when line items add up to the stated total.
        max_confidence: Upper bound of the final confidence.
        compliance_threshold: Minimum confidence of a compliant result.
        valid_rates: VAT rates considered valid.

    Example:
        >>> validator = MultiSourceValidator()
        >>> result = validator.reconcile([vision_candidate], Category.SALES)
        >>> result.sales_amounts
        (111.36,)
    """

    def __init__(
        self,
        structured_high_confidence: Optional[float] = None,
        abs_tolerance: Optional[float] = None,
        rel_tolerance: Optional[float] = None,
        valid_rates: Optional[Sequence[float]] = None,
        **overrides: float
    ) -> None:
        def setting(name: str, default: float) -> float:
            if name in overrides:
                return float(overrides[name])
            return float(get_config(f"validator.{name}", default))

        self.structured_high_confidence = (
            structured_high_confidence if structured_high_confidence is not None
            else setting("structured_high_confidence", 0.85)
        )
        self.abs_tolerance = abs_tolerance if abs_tolerance is not None else setting("abs_tolerance", 0.05)
        self.rel_tolerance = rel_tolerance if rel_tolerance is not None else setting("rel_tolerance", 0.01)
        self.source_weight = setting("source_weight", 0.7)
        self.agreement_weight = setting("agreement_weight", 0.3)
        self.disagreement_penalty = setting("disagreement_penalty", 0.5)
        self.confidence_floor = setting("confidence_floor", 0.2)
        self.consistency_bonus = setting("consistency_bonus", 0.05)
        self.max_confidence = setting("max_confidence", 0.99)
        self.compliance_threshold = setting("compliance_threshold", 0.7)
        self.valid_rates = tuple(
            float(r) for r in (
                valid_rates if valid_rates is not None
                else get_config("validator.valid_rates", [23.0, 13.5, 9.0, 4.8, 0.0])
            )
        )

        logger.debug(
            f"MultiSourceValidator initialized (tolerance={self.abs_tolerance}/"
            f"{self.rel_tolerance:.0%}, valid_rates={self.valid_rates})"
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tolerance(self, a: float, b: float) -> float:
        return max(self.abs_tolerance, self.rel_tolerance * max(abs(a), abs(b)))

    def agrees(self, a: float, b: float) -> bool:
        return abs(a - b) <= self.tolerance(a, b)

    def reconcile(
        self,
        candidates: Iterable[SourceCandidate],
        category: Any,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ExtractionResult:
        """
        Reconcile candidates into one canonical result.

        Args:
            candidates: Candidates from any combination of engines.
            category: Document category; decides the sales/purchase side.
            metadata: Extra metadata merged into the result.

        Returns:
            ExtractionResult with confidence, flags and every candidate.

        Raises:
            ReconciliationError: If a candidate is not a known variant.
        """
        candidates = tuple(candidates)
        for candidate in candidates:
            self._engine_of(candidate)
        category = Category.parse(category)
        metadata = dict(metadata or {})

        vision = self._first(candidates, VisionCandidate)
        if vision is not None and vision.template_id:
            metadata.setdefault('template_id', vision.template_id)
        raw_response = vision.raw_response if vision is not None else None

        selected, reason = self._select(candidates)
        if selected is None:
            logger.info(f"No usable candidates among {len(candidates)} source(s)")
            metadata['selection'] = 'none'
            return ExtractionResult(
                engine=Engine.VISION if vision is not None else Engine.FALLBACK,
                confidence=0.0,
                raw_response=raw_response,
                compliant=False,
                flags=(Flag.NO_SOURCES, Flag.NEEDS_REVIEW),
                candidates=candidates,
                metadata=metadata,
            )

        total = selected.total
        others = [
            c for c in candidates
            if c is not selected and c.has_amounts and c.confidence > 0
        ]
        disagreeing = [c for c in others if not self.agrees(c.total, total)]
        agreeing = [c for c in others if self.agrees(c.total, total)]

        confidence = self._confidence(selected, agreeing, disagreeing)

        flags: List[str] = []
        if disagreeing:
            flags += [Flag.SOURCE_DISAGREEMENT, Flag.NEEDS_REVIEW]
            metadata['disagreement'] = {
                'selected_total': total,
                'other_totals': {self._engine_of(c).value: c.total for c in disagreeing},
            }
            logger.warning(
                f"Sources disagree: selected {total:.2f} ({self._engine_of(selected).value}) vs "
                f"{[round(c.total, 2) for c in disagreeing]}"
            )
        if confidence < self.compliance_threshold:
            flags += [Flag.LOW_CONFIDENCE, Flag.NEEDS_REVIEW]
        if isinstance(selected, FallbackCandidate):
            flags.append(Flag.FALLBACK_USED)
        invalid_rates = [r for r in selected.rates if not self._valid_rate(r)]
        if invalid_rates:
            flags.append(Flag.INVALID_RATE)
            metadata['invalid_rates'] = invalid_rates

        amounts = self._canonical_amounts(selected)
        compliant = (
            Flag.NEEDS_REVIEW not in flags
            and not invalid_rates
            and confidence >= self.compliance_threshold
        )

        metadata['selection'] = reason
        result = ExtractionResult(
            sales_amounts=amounts if category == Category.SALES else (),
            purchase_amounts=() if category == Category.SALES else amounts,
            confidence=confidence,
            engine=self._engine_of(selected),
            raw_response=raw_response,
            compliant=compliant,
            flags=tuple(flags),
            candidates=candidates,
            metadata=metadata,
        )
        logger.info(
            f"Reconciled {len(candidates)} source(s): {reason}, total={total:.2f}, "
            f"confidence={result.confidence:.2f}, flags={list(result.flags)}"
        )
        return result

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def _select(self, candidates: Tuple[SourceCandidate, ...]) -> Tuple[Optional[SourceCandidate], str]:
        usable = [c for c in candidates if c.has_amounts]

        structured = [
            c for c in usable
            if isinstance(c, StructuredCandidate) and c.confidence >= self.structured_high_confidence
        ]
        if structured:
            return max(structured, key=lambda c: c.confidence), 'structured_high_confidence'

        clean_vision = [
            c for c in usable
            if isinstance(c, VisionCandidate) and c.diagnostic == Diagnostic.CLEAN_EXTRACTION
        ]
        if clean_vision:
            return clean_vision[0], 'clean_vision'

        ranked = [c for c in usable if c.confidence > 0]
        if ranked:
            best = max(
                ranked,
                key=lambda c: (c.confidence, ENGINE_PRIORITY[self._engine_of(c)]),
            )
            return best, 'best_remaining'
        return None, 'none'

    def _confidence(
        self,
        selected: SourceCandidate,
        agreeing: List[SourceCandidate],
        disagreeing: List[SourceCandidate]
    ) -> float:
        base = selected.confidence

        if disagreeing:
            confidence = max(min(base, self.confidence_floor), base * self.disagreement_penalty)
        elif agreeing:
            agreement = max(ENGINE_SUPPORT[self._engine_of(c)] for c in agreeing)
            combined = self.source_weight * base + self.agreement_weight * agreement
            confidence = max(base, combined)
        else:
            confidence = base
            if selected.lines_match_total:
                confidence += self.consistency_bonus

        return min(self.max_confidence, max(0.0, confidence))

    @staticmethod
    def _canonical_amounts(selected: SourceCandidate) -> Tuple[float, ...]:
        if selected.stated_total is not None:
            amounts = (selected.stated_total,)
        else:
            amounts = selected.line_amounts
        return tuple(a for a in amounts if a > 0)

    def _valid_rate(self, rate: float) -> bool:
        return any(abs(rate - valid) < 1e-6 for valid in self.valid_rates)

    @staticmethod
    def _first(candidates: Tuple[SourceCandidate, ...], kind: type) -> Optional[Any]:
        for candidate in candidates:
            if isinstance(candidate, kind):
                return candidate
        return None

    @staticmethod
    def _engine_of(candidate: Any) -> Engine:
        if isinstance(candidate, StructuredCandidate):
            return Engine.STRUCTURED
        if isinstance(candidate, VisionCandidate):
            return Engine.VISION
        if isinstance(candidate, FallbackCandidate):
            return Engine.FALLBACK
        raise ReconciliationError(
            f"unknown candidate type {type(candidate).__name__}",
            candidates=[type(candidate).__name__],
        )
