"""
Feedback Metrics Module.

Compares an original ExtractionResult with its user-corrected version and
aggregates per-template accuracy for A/B evaluation.

Metrics Include:
    - Field-level diffs (sales/purchase amounts, totals, engine, compliance)
    - Field accuracy of a single result (unchanged fields / all fields)
    - Per-template accuracy over feedback (correct = 1, partial = 0.5,
      incorrect = 0)

Author: ML Engineering Team
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from vat_extraction.model_inference.extraction_result import ExtractionResult
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)

# Accuracy credited per feedback classification
FEEDBACK_SCORES = {
    'correct': 1.0,
    'partially_correct': 0.5,
    'incorrect': 0.0,
}

AMOUNT_FIELDS = ('sales_amounts', 'purchase_amounts', 'sales_total', 'purchase_total', 'total')


@dataclass(frozen=True)
class FieldDiff:
    """
    Difference in one field between original and corrected results.

    Attributes:
        field: Field name.
        original: Value produced by the pipeline.
        corrected: Value supplied by the user.
        abs_error: Absolute numeric error for totals, else None.
    """
    field: str
    original: Any
    corrected: Any
    abs_error: Optional[float] = None

    @property
    def is_amount(self) -> bool:
        return self.field in AMOUNT_FIELDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'original': self.original,
            'corrected': self.corrected,
            'abs_error': self.abs_error,
        }


@dataclass
class TemplateStats:
    """
    Feedback accuracy of one prompt template.

    Attributes:
        template_id: Template identifier.
        weight: Current selection weight.
        samples: Feedback records attributed to the template.
        correct: Records classified correct.
        partially_correct: Records classified partially correct.
        incorrect: Records classified incorrect.
        promoted: Whether the template is the promoted variant.
    """
    template_id: str
    weight: float = 0.0
    samples: int = 0
    correct: int = 0
    partially_correct: int = 0
    incorrect: int = 0
    promoted: bool = False

    def add(self, feedback: str) -> None:
        feedback = str(getattr(feedback, 'value', feedback))
        if feedback not in FEEDBACK_SCORES:
            raise ValueError(f"Unknown feedback classification: {feedback}")
        self.samples += 1
        if feedback == 'correct':
            self.correct += 1
        elif feedback == 'partially_correct':
            self.partially_correct += 1
        else:
            self.incorrect += 1

    @property
    def accuracy(self) -> float:
        if not self.samples:
            return 0.0
        score = (
            self.correct * FEEDBACK_SCORES['correct']
            + self.partially_correct * FEEDBACK_SCORES['partially_correct']
        )
        return score / self.samples

    def to_dict(self) -> Dict[str, Any]:
        return {
            'template_id': self.template_id,
            'weight': round(self.weight, 4),
            'samples': self.samples,
            'correct': self.correct,
            'partially_correct': self.partially_correct,
            'incorrect': self.incorrect,
            'accuracy': round(self.accuracy, 4),
            'promoted': self.promoted,
        }


class FieldDiffCalculator:
    """
    Computes field-level differences between extraction results.

    Attributes:
        fields: Fields compared.
        tolerance: Numeric tolerance for amounts.

    Example:
        >>> calculator = FieldDiffCalculator()
        >>> diffs = calculator.diff(original, corrected)
        >>> [d.field for d in diffs]
        ['sales_amounts', 'sales_total', 'total']
    """

    DEFAULT_FIELDS = [
        'sales_amounts',
        'purchase_amounts',
        'sales_total',
        'purchase_total',
        'total',
        'engine',
        'compliant',
    ]

    def __init__(self, fields: Optional[List[str]] = None, tolerance: float = 0.005) -> None:
        self.fields = fields or self.DEFAULT_FIELDS
        self.tolerance = tolerance

        logger.debug(f"FieldDiffCalculator initialized (fields: {len(self.fields)})")

    def diff(self, original: ExtractionResult, corrected: ExtractionResult) -> List[FieldDiff]:
        """
        List the fields whose values differ.

        Args:
            original: Result produced by the pipeline.
            corrected: Result supplied by the user.

        Returns:
            One FieldDiff per changed field, in field order.
        """
        diffs = []
        for name in self.fields:
            before = self._value(original, name)
            after = self._value(corrected, name)
            if self._equal(before, after):
                continue
            abs_error = None
            if isinstance(before, float) and isinstance(after, float):
                abs_error = round(abs(before - after), 2)
            diffs.append(FieldDiff(field=name, original=before, corrected=after, abs_error=abs_error))
        return diffs

    def field_accuracy(self, original: ExtractionResult, corrected: ExtractionResult) -> float:
        """Share of compared fields the pipeline got right."""
        if not self.fields:
            return 1.0
        wrong = len(self.diff(original, corrected))
        return 1.0 - wrong / len(self.fields)

    @staticmethod
    def _value(result: ExtractionResult, name: str) -> Any:
        value = getattr(result, name)
        if isinstance(value, tuple):
            return list(value)
        if hasattr(value, 'value'):
            return value.value
        return value

    def _equal(self, a: Any, b: Any) -> bool:
        if isinstance(a, list) and isinstance(b, list):
            return len(a) == len(b) and all(self._equal(x, y) for x, y in zip(a, b))
        if isinstance(a, float) and isinstance(b, float):
            return abs(a - b) <= self.tolerance
        return a == b
