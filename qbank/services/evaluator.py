import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from .. import config
from ..models.db_models import DIFFICULTIES
from ..models.schemas import EvaluationReport, PaperRequest

logger = logging.getLogger(__name__)

LOW_DIVERSITY = 0.5


@dataclass(frozen=True)
class EvaluatedItem:
    difficulty: str
    topics: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()


class ConvergenceEvaluator:
    """
    Scores an accumulated paper selection.

    The report is used by v2 generation to decide when to stop iterating and
    is returned to the caller for display. It never alters the selection.
    """

    def __init__(self, weights: Tuple[float, float, float] = config.EVALUATION_WEIGHTS):
        if len(weights) != 3 or sum(weights) <= 0:
            raise ValueError("Evaluation weights must be three numbers with a positive sum")
        self.weights = weights

    def evaluate(
        self,
        request: PaperRequest,
        items: Sequence[EvaluatedItem],
        available_topics: Iterable[str] = (),
    ) -> EvaluationReport:
        breadth = _unique(request.topics) if request.topics else _unique(available_topics)
        breadth_lower = {t.lower(): t for t in breadth}

        topic_counts = Counter()
        for item in items:
            for topic in {t.lower() for t in item.topics}:
                if topic in breadth_lower:
                    topic_counts[topic] += 1

        if not items:
            coverage = 0.0
        elif not breadth:
            coverage = 1.0
        else:
            coverage = len(topic_counts) / len(breadth)

        labels = [label.lower() for item in items for label in (*item.topics, *item.tags)]
        diversity = len(set(labels)) / len(labels) if labels else 1.0

        requested = request.requested()
        generated = Counter(item.difficulty for item in items)
        balance = _balance(requested, generated)

        w_cov, w_div, w_bal = self.weights
        overall = (w_cov * coverage + w_div * diversity + w_bal * balance) / (w_cov + w_div + w_bal)

        missing = [t for t in breadth if t.lower() not in topic_counts]
        weak = []
        if breadth and topic_counts:
            mean = sum(topic_counts.values()) / len(breadth)
            weak = [t for t in breadth if 0 < topic_counts.get(t.lower(), 0) < mean / 2]

        suggestions = []
        for difficulty in DIFFICULTIES:
            short = requested[difficulty] - generated.get(difficulty, 0)
            if short > 0:
                suggestions.append(f"Add {short} more {difficulty} question(s) to the bank for this subject")
        if missing:
            suggestions.append(f"No questions cover: {', '.join(missing)}")
        if labels and diversity < LOW_DIVERSITY:
            suggestions.append("Selected questions repeat the same topics and tags; broaden the topic list")

        report = EvaluationReport(
            overall_score=round(overall, 4),
            coverage_score=round(coverage, 4),
            diversity_score=round(diversity, 4),
            difficulty_balance_score=round(balance, 4),
            suggestions=suggestions,
            weak_areas=weak,
            missing_topics=missing,
        )
        logger.debug(f"Evaluation: {report.model_dump()}")
        return report


def _balance(requested, generated) -> float:
    total_requested = sum(requested.values())
    total_generated = sum(generated.values())
    if total_generated == 0 or total_requested == 0:
        return 0.0
    distance = sum(
        abs(requested[d] / total_requested - generated.get(d, 0) / total_generated)
        for d in DIFFICULTIES
    )
    return 1.0 - distance / 2


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value and value.lower() not in seen:
            seen.add(value.lower())
            result.append(value)
    return result
