"""
Tests for LearningFeedbackLoop
===============================
Feedback intake, weight adjustment, A/B promotion and field diffs.
"""

import time
from dataclasses import replace

import pytest

from vat_extraction.evaluation import (
    ConfidenceMonitor,
    FeedbackType,
    FieldDiffCalculator,
    LearningFeedbackLoop,
    TemplateStats,
)
from vat_extraction.model_inference import Engine, ExtractionResult
from vat_extraction.storage import InMemoryStorage, StaticIdentity


def result_from(template_id="vat-lines-v1", total=111.36):
    metadata = {"template_id": template_id} if template_id else {}
    return ExtractionResult(
        purchase_amounts=(total,),
        confidence=0.9,
        engine=Engine.VISION,
        compliant=True,
        metadata=metadata,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def loop(registry, storage):
    loop = LearningFeedbackLoop(
        registry, storage, identity=StaticIdentity("user-1"), poll_interval=0.01
    )
    yield loop
    loop.shutdown(drain=False)


def give(loop, template_id, feedback, times=1):
    for _ in range(times):
        original = result_from(template_id)
        corrected = original if feedback == "correct" else original.with_amounts(purchase_amounts=(100.0,))
        loop.submit("doc_1", original, corrected, feedback)


class TestFeedbackIntake:

    def test_incorrect_feedback_record_and_insights(self, loop, storage):
        original = result_from()
        corrected = original.with_amounts(purchase_amounts=(100.0,))

        record, insights = loop.submit(
            "doc_1", original, corrected, "incorrect",
            notes="Total was wrong", confidence_rating=2, media_type="application/pdf",
        )

        assert record.feedback == FeedbackType.INCORRECT
        assert record.template_id == "vat-lines-v1"
        assert record.user_id == "user-1"
        assert [d.field for d in record.field_diffs] == ["purchase_amounts", "purchase_total", "total"]
        assert storage.list_feedback() == [record]
        assert loop.pending_count == 1

        assert insights.accuracy_improvement.startswith("This feedback helps")
        assert insights.common_issues == ("VAT amount extraction needs improvement",)
        assert insights.suggestions[0].startswith("For better PDF processing")
        assert len(insights.suggestions) == 3

    def test_correct_feedback_has_no_issues(self, loop):
        original = result_from()

        _, insights = loop.submit("doc_1", original, original, "correct")

        assert insights.common_issues == ()
        assert insights.suggestions == ()
        assert insights.accuracy_improvement.startswith("Great!")

    @pytest.mark.parametrize("feedback, rating", [("meh", None), ("correct", 6), ("correct", 0)])
    def test_invalid_feedback_is_rejected(self, loop, storage, feedback, rating):
        with pytest.raises(ValueError):
            loop.submit("doc_1", result_from(), result_from(), feedback, confidence_rating=rating)
        assert storage.list_feedback() == []

    def test_feedback_type_parsing(self):
        assert FeedbackType.parse("Partially-Correct") == FeedbackType.PARTIALLY_CORRECT
        assert FeedbackType.parse(FeedbackType.CORRECT) == FeedbackType.CORRECT


class TestWeightUpdates:

    @pytest.mark.parametrize("feedback, expected", [
        ("incorrect", 0.8),
        ("partially_correct", 0.9),
        ("correct", 1.05),
    ])
    def test_weight_moves_by_classification(self, loop, registry, feedback, expected):
        give(loop, "vat-lines-v1", feedback)

        assert loop.process_pending() == 1
        assert registry.get("vat-lines-v1").weight == pytest.approx(expected)
        assert registry.get("vat-json-v1").weight == pytest.approx(1.0)

    def test_result_without_template_leaves_weights(self, loop, registry):
        give(loop, None, "incorrect")

        assert loop.process_pending() == 1
        assert registry.weights() == {"vat-lines-v1": 1.0, "vat-json-v1": 1.0}

    def test_background_thread_applies_feedback(self, loop, registry):
        loop.start()
        give(loop, "vat-lines-v1", "incorrect")

        deadline = time.monotonic() + 2.0
        while registry.get("vat-lines-v1").weight > 0.9 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert registry.get("vat-lines-v1").weight == pytest.approx(0.8)
        assert loop.pending_count == 0


class TestVariantEvaluation:

    def test_better_variant_is_promoted(self, loop, registry, storage):
        give(loop, "vat-lines-v1", "incorrect", times=3)
        give(loop, "vat-json-v1", "correct", times=3)

        evaluation = loop.evaluate_variants()

        assert evaluation.promoted == "vat-json-v1"
        assert evaluation.leader == "vat-json-v1"
        assert evaluation.baseline_accuracy == 0.0
        assert registry.leader().id == "vat-json-v1"
        assert registry.promoted == "vat-json-v1"
        assert all(r.improvement_made for r in storage.list_feedback("vat-json-v1"))
        assert not any(r.improvement_made for r in storage.list_feedback("vat-lines-v1"))

    def test_no_promotion_without_a_margin(self, loop, registry):
        give(loop, "vat-json-v1", "correct", times=3)

        evaluation = loop.evaluate_variants()

        assert evaluation.promoted is None
        assert evaluation.baseline_accuracy == 1.0
        assert registry.promoted is None

    def test_too_few_samples(self, loop):
        give(loop, "vat-lines-v1", "incorrect", times=3)
        give(loop, "vat-json-v1", "correct", times=2)

        assert loop.evaluate_variants().promoted is None

    def test_template_stats(self, loop):
        give(loop, "vat-lines-v1", "correct", times=2)
        give(loop, "vat-lines-v1", "partially_correct")
        give(loop, "vat-lines-v1", "incorrect")

        stats = loop.template_stats()

        assert stats["vat-lines-v1"].samples == 4
        assert stats["vat-lines-v1"].accuracy == pytest.approx(0.625)
        assert stats["vat-json-v1"].samples == 0

    def test_regressions_come_from_the_monitor(self, registry, storage, clock):
        monitor = ConfidenceMonitor(clock=clock)
        loop = LearningFeedbackLoop(registry, storage, monitor=monitor)
        for _ in range(5):
            monitor.record_outcome(True, 0.9)
        assert loop.evaluate_variants().regressions == []

        for _ in range(5):
            monitor.record_outcome(False, 0.1)

        regressions = loop.evaluate_variants().regressions
        assert {r.metric for r in regressions} == {"success_rate", "average_confidence"}

    def test_feedback_summary(self, loop):
        give(loop, "vat-lines-v1", "incorrect", times=2)
        give(loop, None, "correct")

        summary = loop.feedback_summary()

        assert summary["total"] == 3
        assert summary["by_feedback"] == {"incorrect": 2, "correct": 1}
        assert summary["by_template"] == {"vat-lines-v1": 2, "none": 1}
        assert summary["pending"] == 3


class TestFieldDiffs:

    def test_diff_and_accuracy(self):
        calculator = FieldDiffCalculator()
        original = result_from()
        corrected = original.with_amounts(purchase_amounts=(100.0,))

        diffs = calculator.diff(original, corrected)

        total = next(d for d in diffs if d.field == "total")
        assert total.abs_error == pytest.approx(11.36)
        assert calculator.field_accuracy(original, corrected) == pytest.approx(1 - 3 / 7)

    def test_values_within_tolerance_are_equal(self):
        calculator = FieldDiffCalculator()
        original = result_from(total=10.0)

        assert calculator.diff(original, original.with_amounts(purchase_amounts=(10.0,))) == []

    def test_unknown_classification(self):
        with pytest.raises(ValueError):
            TemplateStats(template_id="t").add("great")


class TestCorrectedCopies:

    def test_compliance_flag_is_kept(self, loop):
        original = replace(result_from(), compliant=False)
        corrected = original.with_amounts(purchase_amounts=(100.0,))

        record, insights = loop.submit("doc_1", original, corrected, "incorrect")

        assert corrected.compliant is False
        assert "compliant" not in [d.field for d in record.field_diffs]
        assert "Compliance assessment needs refinement" not in insights.common_issues

    def test_compliance_flag_can_be_corrected(self):
        original = replace(result_from(), compliant=False)

        corrected = original.with_amounts(purchase_amounts=(111.36,), compliant=True)

        assert corrected.compliant is True
        assert FieldDiffCalculator().diff(original, corrected)[0].field == "compliant"
