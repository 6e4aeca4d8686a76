import pytest

from qbank.models.schemas import PaperRequest
from qbank.services.evaluator import ConvergenceEvaluator, EvaluatedItem


def request(**kwargs):
    fields = dict(subject="Mathematics", easy_count=0, medium_count=0, hard_count=0)
    fields.update(kwargs)
    return PaperRequest(**fields)


def test_empty_selection_scores_low():
    report = ConvergenceEvaluator().evaluate(request(easy_count=2, topics=["Linear"]), [])

    assert report.coverage_score == 0.0
    assert report.diversity_score == 1.0
    assert report.difficulty_balance_score == 0.0
    assert report.overall_score == pytest.approx(1 / 3, abs=1e-4)
    assert report.missing_topics == ["Linear"]
    assert "Add 2 more easy question(s) to the bank for this subject" in report.suggestions


def test_scores_for_balanced_partial_coverage():
    items = [
        EvaluatedItem("easy", topics=("Linear",)),
        EvaluatedItem("easy", topics=("Linear",), tags=("warmup",)),
        EvaluatedItem("medium", topics=("Quadratic",)),
    ]
    report = ConvergenceEvaluator().evaluate(
        request(easy_count=2, medium_count=1, topics=["Linear", "Quadratic", "Graphs"]), items
    )

    assert report.coverage_score == pytest.approx(0.6667, abs=1e-4)
    assert report.diversity_score == 0.75
    assert report.difficulty_balance_score == 1.0
    assert report.overall_score == pytest.approx(0.8056, abs=1e-4)
    assert report.missing_topics == ["Graphs"]
    assert report.weak_areas == []
    assert any("Graphs" in s for s in report.suggestions)


def test_bank_topics_are_used_without_requested_topics():
    items = [EvaluatedItem("easy", topics=("Linear",))]
    report = ConvergenceEvaluator().evaluate(
        request(easy_count=1), items, available_topics=["Linear", "Quadratic", "linear"]
    )

    assert report.coverage_score == 0.5
    assert report.missing_topics == ["Quadratic"]


def test_no_breadth_counts_as_covered():
    report = ConvergenceEvaluator().evaluate(request(easy_count=1), [EvaluatedItem("easy")])

    assert report.coverage_score == 1.0
    assert report.diversity_score == 1.0


def test_weak_areas_are_thinly_covered_topics():
    items = [EvaluatedItem("easy", topics=("A",)) for _ in range(5)] + [EvaluatedItem("easy", topics=("B",))]
    report = ConvergenceEvaluator().evaluate(request(easy_count=6, topics=["A", "B"]), items)

    assert report.weak_areas == ["B"]
    assert report.coverage_score == 1.0


def test_difficulty_balance_penalises_skew():
    items = [EvaluatedItem("easy"), EvaluatedItem("easy")]
    report = ConvergenceEvaluator().evaluate(request(easy_count=2, hard_count=2), items)

    assert report.difficulty_balance_score == 0.5
    assert "Add 2 more hard question(s) to the bank for this subject" in report.suggestions


def test_weights_are_configurable():
    items = [EvaluatedItem("easy", topics=("Linear",))]
    evaluator = ConvergenceEvaluator(weights=(1.0, 0.0, 0.0))
    report = evaluator.evaluate(request(easy_count=1, topics=["Linear", "Graphs"]), items)

    assert report.overall_score == report.coverage_score == 0.5

    with pytest.raises(ValueError):
        ConvergenceEvaluator(weights=(0.0, 0.0, 0.0))
