"""
Learning Feedback Loop Module.

Turns user corrections into prompt-template selection weights:

    1. submit() stores a FeedbackRecord with field diffs and returns
       user-facing insights immediately.
    2. A background thread consumes pending records and moves the weight
       of the template that produced the original result:
           incorrect          -penalty
           partially_correct  -penalty / 2
           correct            +reward
    3. evaluate_variants() periodically scores every template with enough
       feedback and promotes a variant that beats the current leader by
       the promotion margin, then checks the monitor for regressions.

The loop never runs on the extraction path.

Author: ML Engineering Team
"""

import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import get_config
from vat_extraction.model_inference.extraction_result import ExtractionResult
from vat_extraction.model_inference.templates import TemplateRegistry
from vat_extraction.storage import IdentityProvider, StaticIdentity, Storage
from vat_extraction.utils.helpers import generate_id, utc_now
from vat_extraction.utils.logger import get_logger

from .metrics import FieldDiff, FieldDiffCalculator, TemplateStats
from .monitor import ConfidenceMonitor, ConfidenceSnapshot, Regression

# Initialize module logger
logger = get_logger(__name__)

INSIGHT_MESSAGES = {
    'correct': "Great! This confirms our AI is working well for similar documents.",
    'partially_correct': "Thanks! We'll improve accuracy for the fields you corrected.",
    'incorrect': "This feedback helps us significantly improve future processing.",
}

ISSUE_MESSAGES = {
    'amounts': "VAT amount extraction needs improvement",
    'compliant': "Compliance assessment needs refinement",
    'engine': "Extraction source selection needs refinement",
}

PDF_SUGGESTION = "For better PDF processing, ensure text is selectable (not scanned images)"
LEARNING_SUGGESTIONS = (
    "Similar documents will be processed more accurately in the future",
    "Consider providing multiple examples for better learning",
)


class FeedbackType(str, Enum):
    """User classification of an extraction result."""

    CORRECT = "correct"
    PARTIALLY_CORRECT = "partially_correct"
    INCORRECT = "incorrect"

    @classmethod
    def parse(cls, value: Any) -> 'FeedbackType':
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace('-', '_').replace(' ', '_')
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(
                f"Unknown feedback '{value}'. Expected one of {[f.value for f in cls]}"
            ) from None


@dataclass(frozen=True)
class FeedbackRecord:
    """
    A user correction of one extraction result.

    Records are immutable; the learning loop stores a replaced copy with
    improvement_made=True when a record contributed to a promotion.
    """
    id: str
    document_id: str
    original: ExtractionResult
    corrected: ExtractionResult
    feedback: FeedbackType
    user_id: str
    template_id: Optional[str] = None
    notes: Optional[str] = None
    confidence_rating: Optional[int] = None
    field_diffs: Tuple[FieldDiff, ...] = ()
    created_at: str = field(default_factory=lambda: utc_now().isoformat())
    improvement_made: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, 'feedback', FeedbackType.parse(self.feedback))
        object.__setattr__(self, 'field_diffs', tuple(self.field_diffs or ()))
        if self.confidence_rating is not None and not 1 <= int(self.confidence_rating) <= 5:
            raise ValueError(f"confidence_rating must be 1-5, got {self.confidence_rating}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'document_id': self.document_id,
            'feedback': self.feedback.value,
            'user_id': self.user_id,
            'template_id': self.template_id,
            'notes': self.notes,
            'confidence_rating': self.confidence_rating,
            'field_diffs': [d.to_dict() for d in self.field_diffs],
            'original': self.original.to_dict(include_candidates=False),
            'corrected': self.corrected.to_dict(include_candidates=False),
            'created_at': self.created_at,
            'improvement_made': self.improvement_made,
        }


@dataclass(frozen=True)
class FeedbackInsights:
    """User-facing summary returned when feedback is accepted."""
    accuracy_improvement: str
    common_issues: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accuracy_improvement': self.accuracy_improvement,
            'common_issues': list(self.common_issues),
            'suggestions': list(self.suggestions),
        }


@dataclass
class VariantEvaluation:
    """Outcome of one A/B evaluation round."""
    stats: Dict[str, TemplateStats]
    leader: str
    baseline_accuracy: float
    promoted: Optional[str] = None
    regressions: List[Regression] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'leader': self.leader,
            'baseline_accuracy': round(self.baseline_accuracy, 4),
            'promoted': self.promoted,
            'regressions': [str(r) for r in self.regressions],
            'templates': {tid: s.to_dict() for tid, s in self.stats.items()},
        }


class LearningFeedbackLoop:
    """
    Background consumer of user feedback.

    Attributes:
        registry: Template registry whose weights are adjusted.
        storage: Feedback persistence.
        monitor: Optional monitor consulted for regressions.
        penalty: Weight removed for incorrect feedback.
        reward: Weight added for correct feedback.
        min_samples: Feedback needed before a template is evaluated.
        promotion_margin: Accuracy lead required for promotion.

    Example:
        >>> loop = LearningFeedbackLoop(registry, storage, monitor)
        >>> record, insights = loop.submit(doc_id, original, corrected, "incorrect")
        >>> loop.process_pending()
        1
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        storage: Storage,
        monitor: Optional[ConfidenceMonitor] = None,
        identity: Optional[IdentityProvider] = None,
        penalty: Optional[float] = None,
        reward: Optional[float] = None,
        min_samples: Optional[int] = None,
        promotion_margin: Optional[float] = None,
        poll_interval: Optional[float] = None,
        evaluation_interval: Optional[float] = None,
        diff_calculator: Optional[FieldDiffCalculator] = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.monitor = monitor
        self.identity = identity or StaticIdentity()
        self.penalty = float(penalty if penalty is not None else get_config("learning.penalty", 0.2))
        self.reward = float(reward if reward is not None else get_config("learning.reward", 0.05))
        self.min_samples = int(min_samples or get_config("learning.min_samples", 3))
        self.promotion_margin = float(
            promotion_margin if promotion_margin is not None
            else get_config("learning.promotion_margin", 0.1)
        )
        self.poll_interval = float(
            poll_interval or get_config("learning.poll_interval_seconds", 1.0)
        )
        self.evaluation_interval = float(
            evaluation_interval or get_config("learning.evaluation_interval_seconds", 300)
        )
        self.diff_calculator = diff_calculator or FieldDiffCalculator()
        self._clock = clock

        self._pending: "queue.Queue[FeedbackRecord]" = queue.Queue()
        self._eval_lock = threading.Lock()
        self._baseline: Optional[ConfidenceSnapshot] = None
        self._last_evaluation = self._clock()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

        logger.debug(
            f"LearningFeedbackLoop initialized (penalty={self.penalty}, reward={self.reward}, "
            f"min_samples={self.min_samples})"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the background learning thread."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="learning-loop", daemon=True)
        self._worker.start()
        logger.info("Learning feedback loop started")

    def shutdown(self, drain: bool = True) -> None:
        """Stop the background thread, applying pending feedback first when drain is set."""
        self._stop.set()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.join(timeout=10)
        if drain:
            self.process_pending()
        logger.info("Learning feedback loop stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.process_pending()
                if self._clock() - self._last_evaluation >= self.evaluation_interval:
                    self.evaluate_variants()
            except Exception as exc:
                logger.exception(f"Learning iteration failed: {exc}")

    # -------------------------------------------------------------------------
    # Feedback intake
    # -------------------------------------------------------------------------

    def submit(
        self,
        document_id: str,
        original: ExtractionResult,
        corrected: ExtractionResult,
        feedback: Any,
        notes: Optional[str] = None,
        confidence_rating: Optional[int] = None,
        media_type: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Tuple[FeedbackRecord, FeedbackInsights]:
        """
        Record feedback and queue it for learning.

        Args:
            document_id: Document the feedback is about.
            original: Result the pipeline produced.
            corrected: Result as corrected by the user.
            feedback: correct, partially_correct or incorrect.
            notes: Optional free-text note.
            confidence_rating: Optional 1-5 rating.
            media_type: Document media type, used for suggestions.
            user_id: Acting user; resolved from the identity provider when omitted.

        Returns:
            Tuple of (stored FeedbackRecord, FeedbackInsights).

        Raises:
            ValueError: On an unknown classification or a rating outside 1-5.
        """
        record = FeedbackRecord(
            id=generate_id("fb"),
            document_id=document_id,
            original=original,
            corrected=corrected,
            feedback=FeedbackType.parse(feedback),
            user_id=user_id or self.identity.current_user_id(),
            template_id=original.template_id,
            notes=notes,
            confidence_rating=confidence_rating,
            field_diffs=tuple(self.diff_calculator.diff(original, corrected)),
        )
        self.storage.save_feedback(record)
        self._pending.put(record)

        logger.info(
            f"Feedback {record.id} ({record.feedback.value}) for document {document_id}, "
            f"template={record.template_id}, changed={[d.field for d in record.field_diffs]}"
        )
        return record, self.build_insights(record, media_type)

    def build_insights(self, record: FeedbackRecord, media_type: Optional[str] = None) -> FeedbackInsights:
        changed = {d.field for d in record.field_diffs}
        issues = []
        if any(d.is_amount for d in record.field_diffs):
            issues.append(ISSUE_MESSAGES['amounts'])
        if 'compliant' in changed:
            issues.append(ISSUE_MESSAGES['compliant'])
        if 'engine' in changed:
            issues.append(ISSUE_MESSAGES['engine'])

        suggestions = []
        if media_type and 'pdf' in media_type.lower():
            suggestions.append(PDF_SUGGESTION)
        if record.feedback != FeedbackType.CORRECT:
            suggestions.extend(LEARNING_SUGGESTIONS)

        return FeedbackInsights(
            accuracy_improvement=INSIGHT_MESSAGES[record.feedback.value],
            common_issues=tuple(issues),
            suggestions=tuple(suggestions),
        )

    @property
    def pending_count(self) -> int:
        return self._pending.qsize()

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def weight_delta(self, feedback: FeedbackType) -> float:
        if feedback == FeedbackType.INCORRECT:
            return -self.penalty
        if feedback == FeedbackType.PARTIALLY_CORRECT:
            return -self.penalty / 2
        return self.reward

    def process_pending(self) -> int:
        """
        Apply every queued record to the template weights.

        Returns:
            Number of records consumed.
        """
        processed = 0
        while True:
            try:
                record = self._pending.get_nowait()
            except queue.Empty:
                break
            processed += 1
            if not record.template_id:
                logger.debug(f"Feedback {record.id} has no template; weights unchanged")
                continue
            self.registry.adjust_weight(record.template_id, self.weight_delta(record.feedback))
        if processed:
            logger.info(f"Applied {processed} feedback record(s); weights={self.registry.weights()}")
        return processed

    def template_stats(self) -> Dict[str, TemplateStats]:
        """Per-template feedback accuracy, including templates without feedback."""
        promoted = self.registry.promoted
        stats = {
            t.id: TemplateStats(template_id=t.id, weight=t.weight, promoted=t.id == promoted)
            for t in self.registry.all()
        }
        for record in self.storage.list_feedback():
            if record.template_id in stats:
                stats[record.template_id].add(record.feedback)
        return stats

    def evaluate_variants(self) -> VariantEvaluation:
        """
        Run one A/B evaluation round.

        A template with at least min_samples records is promoted when its
        accuracy beats the leader's by promotion_margin. A leader without
        enough samples is measured by the accuracy of all feedback.
        """
        with self._eval_lock:
            self._last_evaluation = self._clock()
            stats = self.template_stats()
            leader_id = self.registry.promoted or self.registry.leader().id

            records = self.storage.list_feedback()
            overall = TemplateStats(template_id="*")
            for record in records:
                overall.add(record.feedback)

            leader_stats = stats.get(leader_id)
            if leader_stats is not None and leader_stats.samples >= self.min_samples:
                baseline = leader_stats.accuracy
            else:
                baseline = overall.accuracy

            evaluation = VariantEvaluation(stats=stats, leader=leader_id, baseline_accuracy=baseline)

            eligible = [s for s in stats.values() if s.samples >= self.min_samples]
            if eligible:
                best = max(eligible, key=lambda s: (s.accuracy, s.samples))
                if best.template_id != leader_id and best.accuracy >= baseline + self.promotion_margin:
                    self.registry.promote(best.template_id)
                    evaluation.promoted = best.template_id
                    evaluation.leader = best.template_id
                    self._mark_improvements(records, best.template_id)
                    logger.info(
                        f"Template '{best.template_id}' promoted over '{leader_id}' "
                        f"({best.accuracy:.2f} vs {baseline:.2f})"
                    )
            else:
                logger.debug(f"No template has {self.min_samples}+ feedback records yet")

            if self.monitor is not None:
                current = self.monitor.snapshot()
                if self._baseline is not None:
                    evaluation.regressions = self.monitor.detect_regression(self._baseline, current)
                self._baseline = current

            return evaluation

    def _mark_improvements(self, records: List[FeedbackRecord], template_id: str) -> None:
        marked = 0
        for record in records:
            if record.template_id == template_id and not record.improvement_made:
                self.storage.save_feedback(replace(record, improvement_made=True))
                marked += 1
        logger.debug(f"Marked {marked} feedback record(s) as improvement_made")

    def feedback_summary(self) -> Dict[str, Any]:
        """Counts of stored feedback per classification and template."""
        by_type: Dict[str, int] = defaultdict(int)
        by_template: Dict[str, int] = defaultdict(int)
        for record in self.storage.list_feedback():
            by_type[record.feedback.value] += 1
            by_template[record.template_id or "none"] += 1
        return {
            'total': sum(by_type.values()),
            'by_feedback': dict(by_type),
            'by_template': dict(by_template),
            'pending': self.pending_count,
        }
