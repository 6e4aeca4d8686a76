import asyncio

import pytest

from qbank.models.db_models import QuestionBankEntry
from qbank.models.schemas import BankEntryCreate
from qbank.services.bank_service import BankService, content_hash
from qbank.services.errors import EntryNotFound, InvalidRequestError

from conftest import InMemoryBankIndex


def test_content_hash_ignores_case_and_spacing():
    assert content_hash("What is  2+2?", ["Three", "Four"]) == content_hash("what is 2+2? ", ["three", " four"])
    assert content_hash("What is 2+2?", ["3", "4"]) != content_hash("What is 2+2?", ["4", "3"])


def test_index_failure_leaves_no_row(session_factory):
    class FailingIndex(InMemoryBankIndex):
        async def upsert(self, entry):
            raise ConnectionError("vector store unavailable")

    bank = BankService(session_factory, FailingIndex())
    with pytest.raises(ConnectionError):
        asyncio.run(bank.create(BankEntryCreate(text="Q", subject="Physics")))

    with session_factory() as db:
        assert db.query(QuestionBankEntry).count() == 0


def test_get_many_hydrates_by_id(session_factory, bank_index):
    bank = BankService(session_factory, bank_index)
    first = asyncio.run(bank.create(BankEntryCreate(text="Q1", subject="Physics", difficulty="easy")))
    second = asyncio.run(bank.create(BankEntryCreate(text="Q2", subject="Physics", difficulty="hard")))

    entries = bank.get_many([second.id, first.id, 999])
    assert set(entries) == {first.id, second.id}
    assert entries[second.id].difficulty == "hard"
    assert len(bank_index.entries) == 2


def make_bank(bank, specs):
    """Create entries from ``(text, subject, chapter, difficulty, tags)`` tuples."""
    return [
        asyncio.run(bank.create(BankEntryCreate(
            text=text, subject=subject, chapter=chapter, difficulty=difficulty, tags=tags, topics=[chapter],
        )))
        for text, subject, chapter, difficulty, tags in specs
    ]


BANK = [
    ("Define velocity", "Physics", "Motion", "easy", ["kinematics"]),
    ("Define acceleration", "Physics", "Motion", "medium", ["kinematics"]),
    ("State Ohm's law", "Physics", "Circuits", "easy", ["electricity"]),
    ("Balance the combustion of methane", "Chemistry", "Reactions", "hard", ["Stoichiometry"]),
]


def test_browse_filters_and_pages(session_factory, bank_index):
    bank = BankService(session_factory, bank_index)
    entries = make_bank(bank, BANK)

    physics = bank.browse(subject="Physics", limit=2)
    assert physics.total == 3
    assert physics.total_pages == 2
    assert len(physics.items) == 2

    assert [e.id for e in bank.browse(tag="KINEMATICS").items] == [entries[1].id, entries[0].id]
    assert [e.id for e in bank.browse(search="ohm").items] == [entries[2].id]
    assert bank.browse(subject="Physics", difficulty="easy", chapter="Circuits").total == 1
    with pytest.raises(InvalidRequestError):
        bank.browse(difficulty="trivial")


def test_similar_search_by_text_and_by_entry(session_factory, bank_index):
    bank = BankService(session_factory, bank_index)
    velocity, acceleration, ohm, _ = make_bank(bank, BANK)

    by_text = asyncio.run(bank.search_similar(query="define velocity", subject="Physics", top_k=2))
    assert by_text[0][0].id == velocity.id
    assert len(by_text) == 2

    by_entry = asyncio.run(bank.search_similar(entry_id=velocity.id, top_k=5))
    ids = [entry.id for entry, _ in by_entry]
    assert velocity.id not in ids
    assert set(ids) == {acceleration.id, ohm.id}

    with pytest.raises(InvalidRequestError):
        asyncio.run(bank.search_similar(query="velocity"))
    with pytest.raises(InvalidRequestError):
        asyncio.run(bank.search_similar(subject="Physics"))


def test_filter_options_and_stats(session_factory, bank_index):
    bank = BankService(session_factory, bank_index)
    make_bank(bank, BANK)

    options = bank.filter_options()
    assert options["subjects"] == ["Chemistry", "Physics"]
    assert options["chapters_by_subject"] == {"Chemistry": ["Reactions"], "Physics": ["Circuits", "Motion"]}
    assert options["tags"] == ["Stoichiometry", "electricity", "kinematics"]

    stats = bank.stats()
    assert stats["total"] == 4
    assert stats["recent_count"] == 4
    assert stats["by_subject"] == [{"subject": "Physics", "count": 3}, {"subject": "Chemistry", "count": 1}]
    assert stats["by_difficulty"] == [
        {"difficulty": "easy", "count": 2},
        {"difficulty": "medium", "count": 1},
        {"difficulty": "hard", "count": 1},
    ]


def test_delete_removes_row_and_vector(session_factory, bank_index):
    bank = BankService(session_factory, bank_index)
    entry = make_bank(bank, BANK[:1])[0]
    assert entry.vector_ref in bank_index.entries

    asyncio.run(bank.delete(entry.id))

    assert entry.vector_ref not in bank_index.entries
    with pytest.raises(EntryNotFound):
        bank.get(entry.id)
    with pytest.raises(EntryNotFound):
        asyncio.run(bank.delete(entry.id))


def test_failed_index_delete_keeps_row(session_factory, bank_index):
    class StuckIndex(InMemoryBankIndex):
        async def delete(self, vector_ref):
            raise ConnectionError("vector store unavailable")

    bank = BankService(session_factory, StuckIndex())
    entry = make_bank(bank, BANK[:1])[0]

    with pytest.raises(ConnectionError):
        asyncio.run(bank.delete(entry.id))
    assert bank.get(entry.id).id == entry.id
