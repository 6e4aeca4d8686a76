"""
Tests for the extraction orchestrator.

Verifies that:
1. Events follow the session grammar and end with exactly one terminal event.
2. Page failures are reported and skipped without ending the session.
3. Document and storage failures end the session with an error event.
4. Rows are committed before their events are announced.
5. Cancellation stops between pages and fails the session.
6. Streamed questions equal the rows later read back from the store.
7. Every run closes its channel, even when the session cannot be run.
"""

import asyncio
import json
import threading

import httpx
import pytest

from qbank.models.events import parse_event, to_sse
from qbank.services.errors import SessionFatalError, SessionNotFound
from qbank.services.event_channel import EventChannel
from qbank.services.extraction_orchestrator import ExtractionOrchestrator

from conftest import FakeDocumentStore, FakeExtractionClient


def collect(orchestrator, session_id, cancel_event=None):
    async def run():
        return [e async for e in orchestrator.stream(session_id, cancel_event)]
    return asyncio.run(run())


def assert_grammar(events):
    """session_started progress* (page_start question* (page_complete|page_error))* (complete|error)"""
    types = [e.type for e in events]
    assert types[0] == "session_started"
    assert types[-1] in ("complete", "error")
    assert sum(t in ("complete", "error") for t in types) == 1

    i = 1
    while i < len(types) and types[i] == "progress":
        i += 1
    while i < len(types) - 1:
        if types[i] == "error":
            break
        assert types[i] == "page_start", types
        i += 1
        while types[i] == "question":
            i += 1
        if types[i] == "error":
            break
        assert types[i] in ("page_complete", "page_error"), types
        i += 1
    assert "progress" not in types[i:]


def test_pages_stream_in_order_and_complete(store, documents):
    """Pages 2-4 of a 5 page document yielding 4, 3 and 5 questions."""
    session = store.create("bank.pdf", "bank.pdf", "Physics", start_page=2, num_pages=3)
    client = FakeExtractionClient({2: 4, 3: 3, 4: 5})

    events = collect(ExtractionOrchestrator(store, documents, client), session.id)

    assert_grammar(events)
    assert events[-1].type == "complete"
    assert events[-1].total_questions == 12
    assert [e.page_num for e in events if e.type == "page_start"] == [2, 3, 4]
    assert [e.total_so_far for e in events if e.type == "page_complete"] == [4, 7, 12]
    assert [e.index for e in events if e.type == "question"] == list(range(12))
    assert client.pages == [2, 3, 4]
    assert client.subjects == ["Physics"]

    stored = store.get(session.id)
    assert stored.status == "completed"
    assert stored.total_questions_extracted == 12
    assert stored.started_at is not None and stored.completed_at is not None
    rows = store.questions_of(session.id)
    assert len(rows) == 12
    assert [r.position for r in rows] == list(range(12))
    assert all(r.promotion_status == "pending" for r in rows)
    assert rows[0].correct_index == 1


def test_page_failure_is_skipped(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", start_page=2, num_pages=3)
    client = FakeExtractionClient({2: 4, 3: 3, 4: 5}, failures={3})

    events = collect(ExtractionOrchestrator(store, documents, client), session.id)

    assert_grammar(events)
    errors = [e for e in events if e.type == "page_error"]
    assert len(errors) == 1
    assert errors[0].page_num == 3
    assert [e.total_so_far for e in events if e.type == "page_complete"] == [4, 9]
    assert events[-1].type == "complete"
    assert events[-1].total_questions == 9
    assert store.get(session.id).status == "completed"
    assert {r.page_number for r in store.questions_of(session.id)} == {2, 4}


def test_page_past_end_of_document_is_a_page_error(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", start_page=4, num_pages=3)
    client = FakeExtractionClient({4: 1, 5: 2, 6: 9})

    events = collect(ExtractionOrchestrator(store, documents, client), session.id)

    assert_grammar(events)
    assert [e.page_num for e in events if e.type == "page_error"] == [6]
    assert events[-1].total_questions == 3
    assert client.pages == [4, 5]


def test_unreadable_document_fails_session(store):
    session = store.create("bank.pdf", "missing.pdf", "Physics", num_pages=2)
    documents = FakeDocumentStore(error="Document could not be read")

    events = collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({})), session.id)

    assert_grammar(events)
    assert [e.type for e in events] == ["session_started", "progress", "error"]
    assert events[-1].message == "Document could not be read"
    stored = store.get(session.id)
    assert stored.status == "failed"
    assert stored.error_message == "Document could not be read"


def test_storage_failure_fails_session(store, documents, monkeypatch):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=2)

    def broken_commit(*args, **kwargs):
        raise SessionFatalError("Storage unavailable", "disk I/O error")

    monkeypatch.setattr(store, "commit_page", broken_commit)
    events = collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 2})), session.id)

    assert_grammar(events)
    assert events[-1].type == "error"
    assert events[-1].message == "Storage unavailable"
    assert store.get(session.id).status == "failed"


def test_rows_are_committed_before_announcement(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=3)
    orchestrator = ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 2, 2: 1, 3: 3}))

    async def run():
        async for event in orchestrator.stream(session.id):
            if event.type == "question":
                ids = {r.id for r in store.questions_of(session.id)}
                assert event.id in ids
            elif event.type == "page_complete":
                assert store.get(session.id).total_questions_extracted == event.total_so_far

    asyncio.run(run())


def test_cancellation_stops_between_pages(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=5)
    cancel_event = None

    def cancel_on_page_2(page_number):
        if page_number == 2:
            cancel_event.set()

    client = FakeExtractionClient({1: 1, 2: 2, 3: 3}, on_extract=cancel_on_page_2)
    orchestrator = ExtractionOrchestrator(store, documents, client)

    async def run():
        nonlocal cancel_event
        cancel_event = asyncio.Event()
        return [e async for e in orchestrator.stream(session.id, cancel_event)]

    events = asyncio.run(run())

    assert_grammar(events)
    assert client.pages == [1, 2]
    assert events[-2].type == "page_complete"
    assert events[-2].total_so_far == 3
    assert events[-1].type == "error"
    stored = store.get(session.id)
    assert stored.status == "failed"
    assert stored.error_message == "cancelled"
    assert len(store.questions_of(session.id)) == 3


def test_run_publishes_into_channel(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=2)
    orchestrator = ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 1, 2: 1}))

    async def run():
        channel = EventChannel(maxsize=64)
        events = channel.subscribe()
        task = asyncio.create_task(orchestrator.run(session.id, channel))
        received = [e async for e in events]
        await task
        return received

    events = asyncio.run(run())
    assert_grammar(events)
    assert events[-1].total_questions == 2


def test_sse_frames_round_trip(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", start_page=2, num_pages=2)
    events = collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({2: 1}, failures={3})), session.id)

    for event in events:
        frame = to_sse(event)
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        assert parse_event(json.loads(frame[len("data: "):])) == event


def test_unknown_session_raises(store, documents):
    with pytest.raises(SessionNotFound):
        collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({})), 999)


def test_streamed_questions_match_stored_rows(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=2)
    events = collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 3, 2: 2})), session.id)

    streamed = [e for e in events if e.type == "question"]
    rows = store.questions_of(session.id)
    assert len(streamed) == len(rows) == 5
    assert any(e.image for e in streamed) and any(e.image is None for e in streamed)
    for event, row in zip(streamed, rows):
        assert event.id == row.id
        assert event.index == row.position
        assert event.page == row.page_number
        assert event.text == row.text
        assert event.options == row.options
        assert event.correct_index == row.correct_index
        assert event.image == row.image


def test_finished_session_is_not_run_again(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=1)
    orchestrator = ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 2}))
    collect(orchestrator, session.id)

    events = collect(orchestrator, session.id)

    assert_grammar(events)
    assert [e.type for e in events] == ["session_started", "error"]
    assert events[-1].message == "Session already finished"
    stored = store.get(session.id)
    assert stored.status == "completed"
    assert len(store.questions_of(session.id)) == 2


def test_unrecordable_failure_still_ends_stream(store, documents, monkeypatch):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=1)

    def refuse(*args, **kwargs):
        raise RuntimeError("Session is locked")

    monkeypatch.setattr(store, "mark_processing", refuse)
    monkeypatch.setattr(store, "mark_failed", refuse)
    events = collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 1})), session.id)

    assert_grammar(events)
    assert events[-1].type == "error"
    assert events[-1].details == "Session is locked"


def test_programming_errors_are_not_page_errors(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=3)

    class BrokenClient(FakeExtractionClient):
        async def extract(self, page):
            raise AttributeError("'NoneType' object has no attribute 'content'")

    events = collect(ExtractionOrchestrator(store, documents, BrokenClient({})), session.id)

    assert_grammar(events)
    assert "page_error" not in [e.type for e in events]
    assert events[-1].type == "error"
    assert events[-1].message == "Internal error"
    assert store.get(session.id).status == "failed"


def test_transport_errors_are_page_errors(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=2)

    class FlakyClient(FakeExtractionClient):
        async def extract(self, page):
            if page.page_number == 1:
                raise httpx.ReadTimeout("timed out")
            return await super().extract(page)

    events = collect(ExtractionOrchestrator(store, documents, FlakyClient({2: 1})), session.id)

    assert_grammar(events)
    assert [e.page_num for e in events if e.type == "page_error"] == [1]
    assert events[-1].type == "complete"


def test_crashed_run_still_closes_channel(store, documents):
    orchestrator = ExtractionOrchestrator(store, documents, FakeExtractionClient({}))

    async def run():
        channel = EventChannel(maxsize=8)
        events = channel.subscribe()
        task = asyncio.create_task(orchestrator.run(999, channel))
        received = await asyncio.wait_for(_drain(events), timeout=5)
        with pytest.raises(SessionNotFound):
            await task
        return channel, received

    channel, received = asyncio.run(run())
    assert [e.type for e in received] == ["error"]
    assert channel.drained


def test_live_consumer_keeps_up_with_large_page(store, documents):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=1)
    orchestrator = ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 150}))

    async def run():
        channel = EventChannel(maxsize=64)
        events = channel.subscribe()
        task = asyncio.create_task(orchestrator.run(session.id, channel))
        received = await asyncio.wait_for(_drain(events), timeout=5)
        await task
        return channel, received

    channel, received = asyncio.run(run())
    assert not channel.overflowed
    assert_grammar(received)
    assert sum(e.type == "question" for e in received) == 150
    assert received[-1].total_questions == 150


async def _drain(events):
    return [e async for e in events]


def test_store_calls_run_off_the_event_loop(store, documents, monkeypatch):
    session = store.create("bank.pdf", "bank.pdf", "Physics", num_pages=2)
    calls = []

    for name in ("get", "mark_processing", "commit_page", "mark_completed"):
        def recording(*args, _name=name, _original=getattr(store, name), **kwargs):
            calls.append((_name, threading.get_ident()))
            return _original(*args, **kwargs)
        monkeypatch.setattr(store, name, recording)

    collect(ExtractionOrchestrator(store, documents, FakeExtractionClient({1: 1, 2: 1})), session.id)

    assert {name for name, _ in calls} == {"get", "mark_processing", "commit_page", "mark_completed"}
    assert threading.get_ident() not in {thread for _, thread in calls}
