"""
Evaluation Module.

Monitoring of extraction outcomes and learning from user feedback.

Main Classes:
    - ConfidenceMonitor: Rolling success/confidence/error statistics
    - LearningFeedbackLoop: Feedback intake, template weighting, A/B promotion
    - FieldDiffCalculator: Field-level diff between original and corrected results
"""

from .metrics import FieldDiff, FieldDiffCalculator, TemplateStats, FEEDBACK_SCORES
from .monitor import ConfidenceMonitor, ConfidenceSnapshot, OutcomeRecord, Regression
from .feedback_loop import (
    FeedbackType,
    FeedbackRecord,
    FeedbackInsights,
    VariantEvaluation,
    LearningFeedbackLoop,
)

__all__ = [
    'FieldDiff',
    'FieldDiffCalculator',
    'TemplateStats',
    'FEEDBACK_SCORES',
    'ConfidenceMonitor',
    'ConfidenceSnapshot',
    'OutcomeRecord',
    'Regression',
    'FeedbackType',
    'FeedbackRecord',
    'FeedbackInsights',
    'VariantEvaluation',
    'LearningFeedbackLoop',
]
