import asyncio
import re
import uuid
from typing import Dict, List, Optional

import pytest

from qbank.database import Base, make_engine, make_session_factory
from qbank.services.document_service import PageContent
from qbank.services.errors import DocumentError, PageExtractionError
from qbank.services.extraction_client import ExtractionCandidate, ExtractionClient
from qbank.services.session_store import SessionStore
from qbank.services.vector_service import BankFilter, Candidate, IndexedEntry, QuestionBankIndex


class FakeDocument:
    """Document with a fixed number of pages and generated text."""

    def __init__(self, page_count: int, name: str = "bank.pdf"):
        self.page_count = page_count
        self.name = name

    def page(self, page_number: int) -> PageContent:
        if page_number < 1 or page_number > self.page_count:
            raise PageExtractionError(page_number, f"Page out of range (document has {self.page_count} pages)")
        return PageContent(page_number=page_number, text=f"Text of page {page_number}")


class FakeDocumentStore:
    def __init__(self, page_count: int = 5, error: Optional[str] = None):
        self.page_count = page_count
        self.error = error
        self.opened: List[str] = []

    async def open(self, document_ref: str) -> FakeDocument:
        self.opened.append(document_ref)
        if self.error:
            raise DocumentError(self.error, document_ref)
        return FakeDocument(self.page_count, name=document_ref)


class FakeExtractionClient(ExtractionClient):
    """
    Returns ``counts[page]`` generated questions per page; every other
    question carries an image.

    A page listed in ``failures`` raises PageExtractionError; ``on_extract``
    is called with the page number before each extraction.
    """

    def __init__(self, counts: Dict[int, int], failures=(), on_extract=None):
        self.counts = counts
        self.failures = set(failures)
        self.on_extract = on_extract
        self.pages: List[int] = []
        self.subjects: List[str] = []

    def for_subject(self, subject: str):
        self.subjects.append(subject)
        return self

    async def extract(self, page: PageContent) -> List[ExtractionCandidate]:
        self.pages.append(page.page_number)
        if self.on_extract is not None:
            self.on_extract(page.page_number)
        await asyncio.sleep(0)
        if page.page_number in self.failures:
            raise PageExtractionError(page.page_number, "Response is not valid JSON")
        return [
            ExtractionCandidate(
                question=f"Page {page.page_number} question {i + 1}?",
                options=["alpha", "beta", "gamma", "delta"],
                answer="beta",
                image=f"https://files.test/page-{page.page_number}-{i + 1}.png" if i % 2 == 0 else None,
            )
            for i in range(self.counts.get(page.page_number, 0))
        ]


def _tokens(text: str):
    return set(re.findall(r"[a-z0-9]+", text.lower()))


class InMemoryBankIndex(QuestionBankIndex):
    """Bank index scoring entries by token overlap with the bias text."""

    def __init__(self):
        self.entries: Dict[str, IndexedEntry] = {}
        self.queries: List[tuple] = []

    async def upsert(self, entry: IndexedEntry) -> str:
        ref = entry.vector_ref or uuid.uuid4().hex
        self.entries[ref] = IndexedEntry(**{**entry.__dict__, "vector_ref": ref})
        return ref

    async def query(self, filters: BankFilter, bias_text: str, limit: int) -> List[Candidate]:
        self.queries.append((filters, bias_text, limit))
        bias = _tokens(bias_text)
        scored = []
        for entry in self._matching(filters):
            words = _tokens(" ".join([entry.text, *entry.topics, *entry.tags]))
            score = len(bias & words) / len(bias) if bias else 0.0
            scored.append(self._candidate(entry, score))
        scored.sort(key=lambda c: -c.score)
        return scored[:limit]

    async def list_metadata(self, filters: BankFilter) -> List[Candidate]:
        return [self._candidate(e, 0.0) for e in self._matching(filters)]

    async def delete(self, vector_ref: str) -> None:
        self.entries.pop(vector_ref, None)

    def _matching(self, filters: BankFilter):
        for entry in self.entries.values():
            if entry.subject != filters.subject:
                continue
            if filters.chapter and entry.chapter != filters.chapter:
                continue
            if filters.difficulty and entry.difficulty != filters.difficulty:
                continue
            if filters.accepts(entry.topics, entry.tags):
                yield entry

    @staticmethod
    def _candidate(entry: IndexedEntry, score: float) -> Candidate:
        return Candidate(
            entry_id=entry.entry_id,
            score=score,
            difficulty=entry.difficulty,
            subject=entry.subject,
            chapter=entry.chapter,
            topics=entry.topics,
            tags=entry.tags,
        )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def bank_index():
    return InMemoryBankIndex()


@pytest.fixture
def documents():
    return FakeDocumentStore(page_count=5)


@pytest.fixture
def make_client():
    return FakeExtractionClient


def seed_index(index: InMemoryBankIndex, specs):
    """
    Add entries to an index from ``(difficulty, topics, tags)`` tuples.

    Entry ids are assigned in order starting at 1.
    """
    for i, (difficulty, topics, tags) in enumerate(specs, start=1):
        asyncio.run(index.upsert(IndexedEntry(
            entry_id=i,
            text=f"Question {i} about {' '.join(topics)}",
            subject="Mathematics",
            difficulty=difficulty,
            chapter="Algebra",
            topics=tuple(topics),
            tags=tuple(tags),
        )))
    return index


@pytest.fixture
def seeded_index():
    return seed_index
