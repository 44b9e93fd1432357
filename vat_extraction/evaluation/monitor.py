"""
Confidence Monitor Module.

Rolling statistics over extraction outcomes:

    - success rate (succeeded and not flagged for review)
    - average confidence and processing time
    - error counts per ErrorCategory
    - diagnostic counts from the response parser
    - a bounded corpus of responses the parser could not read cleanly

Snapshots are read-only; the learning loop compares consecutive snapshots
to detect regressions.

Author: ML Engineering Team
"""

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import yaml

from config import get_config
from vat_extraction.utils.exceptions import ErrorCategory
from vat_extraction.utils.helpers import ensure_directory, utc_now
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)


@dataclass(frozen=True)
class OutcomeRecord:
    """One finished extraction attempt."""
    timestamp: float
    succeeded: bool
    confidence: float
    processing_time_ms: float
    diagnostic: Optional[str] = None
    needs_review: bool = False
    engine: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.succeeded and not self.needs_review


@dataclass(frozen=True)
class ConfidenceSnapshot:
    """
    Aggregate over the monitor window.

    Attributes:
        window_seconds: Width of the rolling window.
        total_attempts: Outcomes recorded in the window.
        successes: Outcomes that succeeded without review.
        success_rate: successes / total_attempts.
        average_confidence: Mean confidence over all attempts.
        average_processing_time_ms: Mean processing time.
        needs_review: Outcomes flagged for review.
        error_counts: Errors per ErrorCategory in the window.
        diagnostic_counts: Response diagnostics in the window.
        engine_counts: Outcomes per selected engine.
        taken_at: ISO-8601 timestamp.
    """
    window_seconds: float = 0.0
    total_attempts: int = 0
    successes: int = 0
    success_rate: float = 0.0
    average_confidence: float = 0.0
    average_processing_time_ms: float = 0.0
    needs_review: int = 0
    error_counts: Dict[str, int] = field(default_factory=dict)
    diagnostic_counts: Dict[str, int] = field(default_factory=dict)
    engine_counts: Dict[str, int] = field(default_factory=dict)
    taken_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'window_seconds': self.window_seconds,
            'total_attempts': self.total_attempts,
            'successes': self.successes,
            'success_rate': round(self.success_rate, 4),
            'average_confidence': round(self.average_confidence, 4),
            'average_processing_time_ms': round(self.average_processing_time_ms, 2),
            'needs_review': self.needs_review,
            'error_counts': dict(self.error_counts),
            'diagnostic_counts': dict(self.diagnostic_counts),
            'engine_counts': dict(self.engine_counts),
            'taken_at': self.taken_at,
        }


@dataclass(frozen=True)
class Regression:
    """A metric that dropped by more than the regression threshold."""
    metric: str
    baseline: float
    current: float

    @property
    def drop(self) -> float:
        return self.baseline - self.current

    def __str__(self) -> str:
        return f"{self.metric} dropped {self.baseline:.2f} -> {self.current:.2f}"


class ConfidenceMonitor:
    """
    Thread-safe rolling window of extraction outcomes.

    Attributes:
        window_seconds: Outcomes older than this are dropped.
        max_records: Hard cap on retained outcomes.
        regression_threshold: Drop that counts as a regression.

    Example:
        >>> monitor = ConfidenceMonitor(window_seconds=3600)
        >>> monitor.record_outcome(succeeded=True, confidence=0.9, processing_time_ms=420)
        >>> monitor.snapshot().success_rate
        1.0
    """

    REGRESSION_METRICS = ('success_rate', 'average_confidence')

    def __init__(
        self,
        window_seconds: Optional[float] = None,
        max_records: Optional[int] = None,
        parse_failure_corpus_size: Optional[int] = None,
        regression_threshold: Optional[float] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.window_seconds = float(window_seconds or get_config("monitor.window_seconds", 3600))
        self.max_records = int(max_records or get_config("monitor.max_records", 10000))
        corpus_size = int(
            parse_failure_corpus_size or get_config("monitor.parse_failure_corpus_size", 500)
        )
        self.regression_threshold = float(
            regression_threshold if regression_threshold is not None
            else get_config("monitor.regression_threshold", 0.1)
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._outcomes: Deque[OutcomeRecord] = deque(maxlen=self.max_records)
        self._errors: Deque[Tuple[float, str]] = deque(maxlen=self.max_records)
        self._parse_failures: Deque[Dict[str, Any]] = deque(maxlen=corpus_size)

        logger.debug(f"ConfidenceMonitor initialized (window={self.window_seconds:.0f}s)")

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_outcome(
        self,
        succeeded: bool,
        confidence: float,
        processing_time_ms: float = 0.0,
        diagnostic: Optional[str] = None,
        needs_review: bool = False,
        engine: Optional[str] = None
    ) -> None:
        record = OutcomeRecord(
            timestamp=self._clock(),
            succeeded=bool(succeeded),
            confidence=max(0.0, min(1.0, float(confidence))),
            processing_time_ms=max(0.0, float(processing_time_ms)),
            diagnostic=str(getattr(diagnostic, 'value', diagnostic)) if diagnostic else None,
            needs_review=bool(needs_review),
            engine=str(getattr(engine, 'value', engine)) if engine else None,
        )
        with self._lock:
            self._outcomes.append(record)

    def record_error(self, category: Union[ErrorCategory, str]) -> None:
        category = ErrorCategory(category)
        with self._lock:
            self._errors.append((self._clock(), category.value))
        logger.debug(f"Recorded {category.value}")

    def record_parse_failure(
        self,
        text: Optional[str],
        diagnostic: Any,
        template_id: Optional[str] = None
    ) -> None:
        """Keep a model response the parser could not read cleanly."""
        entry = {
            'recorded_at': utc_now().isoformat(),
            'diagnostic': str(getattr(diagnostic, 'value', diagnostic)),
            'template_id': template_id,
            'text': text or '',
        }
        with self._lock:
            self._parse_failures.append(entry)

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def snapshot(self) -> ConfidenceSnapshot:
        """Aggregate the outcomes and errors inside the window."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            outcomes = list(self._outcomes)
            errors = [category for _, category in self._errors]

        total = len(outcomes)
        successes = sum(1 for o in outcomes if o.is_success)
        error_counts = {category.value: 0 for category in ErrorCategory}
        error_counts.update(Counter(errors))

        return ConfidenceSnapshot(
            window_seconds=self.window_seconds,
            total_attempts=total,
            successes=successes,
            success_rate=successes / total if total else 0.0,
            average_confidence=sum(o.confidence for o in outcomes) / total if total else 0.0,
            average_processing_time_ms=(
                sum(o.processing_time_ms for o in outcomes) / total if total else 0.0
            ),
            needs_review=sum(1 for o in outcomes if o.needs_review),
            error_counts=error_counts,
            diagnostic_counts=dict(Counter(o.diagnostic for o in outcomes if o.diagnostic)),
            engine_counts=dict(Counter(o.engine for o in outcomes if o.engine)),
        )

    def detect_regression(
        self,
        baseline: ConfidenceSnapshot,
        current: Optional[ConfidenceSnapshot] = None
    ) -> List[Regression]:
        """
        Compare two snapshots.

        Args:
            baseline: Earlier snapshot.
            current: Later snapshot; taken now when omitted.

        Returns:
            Metrics that dropped by more than the regression threshold.
        """
        current = current or self.snapshot()
        if not baseline.total_attempts or not current.total_attempts:
            return []

        regressions = []
        for metric in self.REGRESSION_METRICS:
            before = getattr(baseline, metric)
            after = getattr(current, metric)
            if before - after > self.regression_threshold:
                regressions.append(Regression(metric=metric, baseline=before, current=after))
        for regression in regressions:
            logger.warning(f"Regression detected: {regression}")
        return regressions

    def parse_failures(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self._parse_failures]

    def export_parse_failures(self, path: Union[str, Path]) -> int:
        """
        Write the parse-failure corpus as YAML.

        Returns:
            Number of entries written.
        """
        path = Path(path)
        ensure_directory(path.parent)
        entries = self.parse_failures()
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(entries, f, allow_unicode=True, sort_keys=False)
        logger.info(f"Exported {len(entries)} parse failures to {path}")
        return len(entries)

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._errors.clear()
            self._parse_failures.clear()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._outcomes and self._outcomes[0].timestamp < cutoff:
            self._outcomes.popleft()
        while self._errors and self._errors[0][0] < cutoff:
            self._errors.popleft()
