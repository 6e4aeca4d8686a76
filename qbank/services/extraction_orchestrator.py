"""
Extraction job orchestration.

Drives the extraction client over a session's page range, one page at a
time, commits each page's questions and announces progress as events. Page
failures are reported in the stream and skipped; anything that prevents the
session from continuing ends it with a single terminal ``error`` event.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

from ..models.events import (
    SessionStartedEvent, ProgressEvent, PageStartEvent, QuestionEvent,
    PageCompleteEvent, PageErrorEvent, CompleteEvent, ErrorEvent,
)
from .document_service import DocumentStore
from .errors import PageExtractionError, SessionFatalError
from .event_channel import EventChannel
from .extraction_client import ExtractionClient
from .session_store import PageCandidate, SessionStore

logger = logging.getLogger(__name__)


class SessionCancelled(Exception):
    pass


class ExtractionOrchestrator:
    def __init__(self, store: SessionStore, documents: DocumentStore, client: ExtractionClient):
        self.store = store
        self.documents = documents
        self.client = client

    async def run(self, session_id: int, channel: EventChannel, cancel_event: Optional[asyncio.Event] = None) -> None:
        """Run a session to its terminal event, publishing into ``channel``."""
        try:
            async for event in self.stream(session_id, cancel_event):
                channel.publish(event)
                # let an attached consumer drain before the next publish
                await asyncio.sleep(0)
        finally:
            if not channel.closed:
                logger.error(f"Session {session_id} stopped without a terminal event")
                channel.publish(ErrorEvent(message="Internal error", details="Session stopped unexpectedly"))

    async def stream(self, session_id: int, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator:
        """
        Lazily yield the session's events.

        Each page's rows and counter are committed before any of that page's
        ``question`` or ``page_complete`` events are yielded.
        """
        session = await asyncio.to_thread(self.store.get, session_id)
        start_page = session.start_page
        total_pages = session.num_pages
        total = session.total_questions_extracted

        yield SessionStartedEvent(session_id=session_id, start_page=start_page, total_pages=total_pages)

        if session.status in ("completed", "failed"):
            logger.warning(f"Session {session_id} is already {session.status}; not running it again")
            yield ErrorEvent(message="Session already finished", details=f"status: {session.status}")
            return

        try:
            await asyncio.to_thread(self.store.mark_processing, session_id)
            logger.info(f"Processing session {session_id}: {session.file_name} pages {start_page}-{start_page + total_pages - 1}")

            yield ProgressEvent(phase="Opening document")
            document = await self.documents.open(session.document_ref)
            yield ProgressEvent(phase=f"Document opened ({document.page_count} pages)")
            client = self.client.for_subject(session.subject)

            for offset in range(total_pages):
                if cancel_event is not None and cancel_event.is_set():
                    raise SessionCancelled()

                page_num = start_page + offset
                yield PageStartEvent(page_num=page_num, current_page=offset + 1, total_pages=total_pages)

                try:
                    page = await asyncio.to_thread(document.page, page_num)
                    candidates = await client.extract(page)
                except PageExtractionError as e:
                    logger.warning(f"Session {session_id} page {page_num} failed: {e.detail}")
                    yield PageErrorEvent(page_num=page_num, error=e.detail)
                    continue
                except (httpx.HTTPError, asyncio.TimeoutError) as e:
                    logger.warning(f"Session {session_id} page {page_num} extraction call failed: {e}")
                    yield PageErrorEvent(page_num=page_num, error=str(e) or type(e).__name__)
                    continue

                rows = await asyncio.to_thread(
                    self.store.commit_page,
                    session_id,
                    page_num,
                    [
                        PageCandidate(
                            text=c.question,
                            options=c.options,
                            correct_index=c.correct_index,
                            image=c.image,
                            question_type=c.question_type,
                        )
                        for c in candidates
                    ],
                )
                for row in rows:
                    yield QuestionEvent(
                        id=row.id,
                        page=page_num,
                        index=row.position,
                        text=row.text,
                        options=row.options,
                        correct_index=row.correct_index,
                        image=row.image,
                        question_type=row.question_type,
                    )
                total += len(rows)
                logger.info(f"Session {session_id} page {page_num}: {len(rows)} questions ({total} total)")
                yield PageCompleteEvent(page_num=page_num, total_so_far=total)

            await asyncio.to_thread(self.store.mark_completed, session_id)
            logger.info(f"Session {session_id} completed with {total} questions")
            yield CompleteEvent(total_questions=total)

        except SessionCancelled:
            logger.info(f"Session {session_id} cancelled after {total} questions")
            await self._fail(session_id, "cancelled")
            yield ErrorEvent(message="Session cancelled", details=f"{total} questions were committed before cancellation")
        except SessionFatalError as e:
            logger.error(f"Session {session_id} failed: {e.message} {e.details}")
            await self._fail(session_id, e.message)
            yield ErrorEvent(message=e.message, details=e.details or None)
        except Exception as e:
            logger.exception(f"Unexpected error in session {session_id}")
            await self._fail(session_id, f"Internal error: {e}")
            yield ErrorEvent(message="Internal error", details=str(e))

    async def _fail(self, session_id: int, message: str) -> None:
        try:
            await asyncio.to_thread(self.store.mark_failed, session_id, message)
        except Exception as e:
            logger.error(f"Could not record failure of session {session_id}: {e}")
