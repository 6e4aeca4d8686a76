"""
Iterative paper assembly.

All three strategies share one quota-fill step: a single bank query produces a
candidate pool, and for every difficulty bucket that still needs questions the
best unused candidates are accepted (score descending, earliest discovered
first on ties). Strategies differ only in how they bias successive queries and
when they stop:

    v1    one broad query
    v1.5  one query per topic/tag permutation found in the bank
    v2    one query per keyword, stopping early once the evaluator's overall
          score reaches the convergence threshold

A bucket is never over-filled to make up for another one; a short paper is
returned with its shortfall reported in the result.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .. import config
from ..models.db_models import DIFFICULTIES
from ..models.schemas import EvaluationReport, PaperRequest
from .errors import DuplicateSelectionConflict, InvalidRequestError
from .evaluator import ConvergenceEvaluator, EvaluatedItem
from .keyword_service import build_keywords
from .vector_service import BankFilter, Candidate, QuestionBankIndex

logger = logging.getLogger(__name__)

UNLABELLED = "(unlabelled)"


class ExclusionSet:
    """Entry ids already placed on the paper being assembled."""

    def __init__(self):
        self._ids = set()

    def add(self, entry_id: int) -> None:
        if entry_id in self._ids:
            raise DuplicateSelectionConflict(f"Entry {entry_id} is already selected")
        self._ids.add(entry_id)

    def __contains__(self, entry_id) -> bool:
        return entry_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


@dataclass(frozen=True)
class Permutation:
    topics: Tuple[str, ...]
    tags: Tuple[str, ...]
    frequency: int

    @property
    def label(self) -> str:
        if not self.topics and not self.tags:
            return UNLABELLED
        return " / ".join(part for part in (", ".join(self.topics), ", ".join(self.tags)) if part)


@dataclass
class SelectedItem:
    entry_id: int
    difficulty: str
    score: float
    topics: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    keyword: Optional[str] = None
    permutation: Optional[str] = None


@dataclass
class AssemblyResult:
    model_version: str
    requested: Dict[str, int]
    selected: List[SelectedItem] = field(default_factory=list)
    iterations: int = 0
    permutations_available: Optional[int] = None
    permutations_used: Optional[int] = None
    topics_discovered: Optional[int] = None
    tags_discovered: Optional[int] = None
    keywords_used: Optional[List[str]] = None
    evaluation: Optional[EvaluationReport] = None

    @property
    def generated(self) -> Dict[str, int]:
        counts = Counter(item.difficulty for item in self.selected)
        return {d: counts.get(d, 0) for d in DIFFICULTIES}

    @property
    def shortfall(self) -> Dict[str, int]:
        generated = self.generated
        return {d: self.requested[d] - generated[d] for d in DIFFICULTIES}

    @property
    def quota_met(self) -> bool:
        return not any(self.shortfall.values())


class _Assembly:
    """Per-request selection state."""

    def __init__(self, request: PaperRequest):
        self.request = request
        self.requested = request.requested()
        self.exclusion = ExclusionSet()
        self.discovery: Dict[int, int] = {}
        self.selected: List[SelectedItem] = []
        self.generated = {d: 0 for d in DIFFICULTIES}

    def remaining(self, difficulty: str) -> int:
        return self.requested[difficulty] - self.generated[difficulty]

    def remaining_total(self) -> int:
        return sum(self.remaining(d) for d in DIFFICULTIES)

    def filled(self) -> bool:
        return self.remaining_total() == 0

    def fill(self, pool: Sequence[Candidate], keyword: Optional[str] = None, permutation: Optional[str] = None) -> int:
        for candidate in pool:
            self.discovery.setdefault(candidate.entry_id, len(self.discovery))

        accepted = 0
        for difficulty in DIFFICULTIES:
            need = self.remaining(difficulty)
            if need <= 0:
                continue
            ranked = sorted(
                (c for c in pool if c.difficulty == difficulty and c.entry_id not in self.exclusion),
                key=lambda c: (-c.score, self.discovery[c.entry_id]),
            )
            for candidate in ranked:
                if need == 0:
                    break
                try:
                    self.exclusion.add(candidate.entry_id)
                except DuplicateSelectionConflict:
                    # same entry twice in one pool
                    continue
                self.selected.append(SelectedItem(
                    entry_id=candidate.entry_id,
                    difficulty=difficulty,
                    score=candidate.score,
                    topics=candidate.topics,
                    tags=candidate.tags,
                    keyword=keyword,
                    permutation=permutation,
                ))
                self.generated[difficulty] += 1
                need -= 1
                accepted += 1
        return accepted

    def evaluated_items(self) -> List[EvaluatedItem]:
        return [EvaluatedItem(difficulty=s.difficulty, topics=s.topics, tags=s.tags) for s in self.selected]


class PaperEngine:
    def __init__(
        self,
        index: QuestionBankIndex,
        evaluator: Optional[ConvergenceEvaluator] = None,
        convergence_threshold: float = config.CONVERGENCE_THRESHOLD,
        oversample: int = config.CANDIDATE_OVERSAMPLE,
        min_pool: int = config.MIN_CANDIDATE_POOL,
    ):
        self.index = index
        self.evaluator = evaluator or ConvergenceEvaluator()
        self.convergence_threshold = convergence_threshold
        self.oversample = oversample
        self.min_pool = min_pool

    async def generate_v1(self, request: PaperRequest) -> AssemblyResult:
        self.validate(request)
        state = _Assembly(request)
        pool = await self._query(state, self._bias_text(request))
        state.fill(pool)
        logger.info(f"v1: selected {len(state.selected)} of {sum(state.requested.values())} from a pool of {len(pool)}")
        return self._finish(state, "v1", iterations=1)

    async def generate_v1_5(self, request: PaperRequest) -> AssemblyResult:
        self.validate(request)
        state = _Assembly(request)
        metadata = await self.index.list_metadata(self._filters(request))
        permutations = discover_permutations(metadata)
        topics = {t.lower() for c in metadata for t in c.topics}
        tags = {t.lower() for c in metadata for t in c.tags}
        logger.info(f"v1.5: {len(permutations)} permutations, {len(topics)} topics, {len(tags)} tags")

        iterations = 0
        for permutation in permutations:
            if state.filled() or iterations >= request.max_iterations:
                break
            iterations += 1
            bias = self._bias_text(request) if permutation.label == UNLABELLED else permutation.label
            pool = await self._query(state, bias)
            accepted = state.fill(pool, permutation=permutation.label)
            logger.info(f"v1.5 iteration {iterations} [{permutation.label}]: accepted {accepted}")

        return self._finish(
            state,
            "v1.5",
            iterations=iterations,
            permutations_available=len(permutations),
            permutations_used=iterations,
            topics_discovered=len(topics),
            tags_discovered=len(tags),
        )

    async def generate_v2(self, request: PaperRequest) -> AssemblyResult:
        self.validate(request)
        state = _Assembly(request)
        keywords = build_keywords(request.subject, request.chapter, request.topics, request.description)
        available_topics: List[str] = []
        if not request.topics:
            metadata = await self.index.list_metadata(self._filters(request))
            available_topics = [t for c in metadata for t in c.topics]

        used: List[str] = []
        evaluation = None
        for keyword in keywords:
            if state.filled() or len(used) >= request.max_iterations:
                break
            used.append(keyword)
            pool = await self._query(state, keyword)
            accepted = state.fill(pool, keyword=keyword)
            evaluation = self.evaluator.evaluate(request, state.evaluated_items(), available_topics)
            logger.info(f"v2 iteration {len(used)} [{keyword}]: accepted {accepted}, score {evaluation.overall_score}")
            if evaluation.overall_score >= self.convergence_threshold:
                logger.info(f"v2 converged after {len(used)} iterations")
                break

        return self._finish(state, "v2", iterations=len(used), keywords_used=used, evaluation=evaluation)

    @staticmethod
    def validate(request: PaperRequest) -> None:
        if not request.subject.strip():
            raise InvalidRequestError("subject is required")
        if any(n < 0 for n in request.requested().values()):
            raise InvalidRequestError("question counts cannot be negative")
        if sum(request.requested().values()) < 1:
            raise InvalidRequestError("At least one question must be requested")
        if request.max_iterations < 1:
            raise InvalidRequestError("max_iterations must be at least 1")

    def pool_size(self, remaining_total: int) -> int:
        return min(config.MAX_CANDIDATE_POOL, max(self.min_pool, self.oversample * remaining_total))

    async def _query(self, state: _Assembly, bias_text: str) -> List[Candidate]:
        return await self.index.query(
            self._filters(state.request), bias_text, self.pool_size(state.remaining_total())
        )

    @staticmethod
    def _filters(request: PaperRequest) -> BankFilter:
        return BankFilter(
            subject=request.subject,
            chapter=request.chapter or None,
            tags=tuple(request.tags),
            topics=tuple(request.topics),
        )

    @staticmethod
    def _bias_text(request: PaperRequest) -> str:
        if request.description:
            return request.description
        parts = [request.subject, request.chapter or "", " ".join(request.topics), " ".join(request.tags)]
        return " ".join(p for p in parts if p)

    @staticmethod
    def _finish(state: _Assembly, model_version: str, **meta) -> AssemblyResult:
        result = AssemblyResult(
            model_version=model_version,
            requested=state.requested,
            selected=state.selected,
            **meta,
        )
        if not result.quota_met:
            logger.warning(f"{model_version}: quota not met, shortfall {result.shortfall}")
        return result


def discover_permutations(metadata: Sequence[Candidate]) -> List[Permutation]:
    """Distinct topic/tag combinations, most frequent first, then by label."""
    counts = Counter()
    for candidate in metadata:
        key = (
            tuple(sorted({t for t in candidate.topics}, key=str.lower)),
            tuple(sorted({t for t in candidate.tags}, key=str.lower)),
        )
        counts[key] += 1
    permutations = [Permutation(topics=k[0], tags=k[1], frequency=n) for k, n in counts.items()]
    return sorted(permutations, key=lambda p: (-p.frequency, p.label))
