import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..models.db_models import UploadSession, ExtractedQuestion, SESSION_STATUSES, utcnow
from .errors import InvalidRequestError, SessionFatalError, SessionNotFound

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class ResultPage:
    items: List[UploadSession]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


@dataclass
class PageCandidate:
    """A validated extraction result ready to be committed."""
    text: str
    options: List[str]
    correct_index: Optional[int] = None
    image: Optional[str] = None
    question_type: str = "objective"


class SessionStore:
    """Durable record of extraction sessions and the questions they produced."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def create(
        self,
        file_name: str,
        document_ref: str,
        subject: str,
        start_page: int = 1,
        num_pages: int = 1,
        created_by: Optional[str] = None,
    ) -> UploadSession:
        if start_page < 1:
            raise InvalidRequestError("start_page must be at least 1")
        if num_pages < 1:
            raise InvalidRequestError("num_pages must be at least 1")
        if not subject or not subject.strip():
            raise InvalidRequestError("subject is required")
        if not document_ref or not document_ref.strip():
            raise InvalidRequestError("document_ref is required")

        with self._session_factory() as db:
            session = UploadSession(
                file_name=file_name,
                document_ref=document_ref,
                subject=subject.strip(),
                start_page=start_page,
                num_pages=num_pages,
                status="pending",
                created_by=created_by,
            )
            db.add(session)
            db.commit()
            db.refresh(session)
            logger.info(f"Created upload session {session.id} for {file_name} (pages {start_page}-{start_page + num_pages - 1})")
            return session

    def get(self, session_id: int) -> UploadSession:
        with self._session_factory() as db:
            session = db.get(UploadSession, session_id)
            if session is None:
                raise SessionNotFound(f"Upload session {session_id} not found")
            return session

    def list(
        self,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        created_by: Optional[str] = None,
    ) -> ResultPage:
        if status is not None and status not in SESSION_STATUSES:
            raise InvalidRequestError(f"Unknown status {status!r}")
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        with self._session_factory() as db:
            query = db.query(UploadSession)
            if status is not None:
                query = query.filter(UploadSession.status == status)
            if created_by is not None:
                query = query.filter(UploadSession.created_by == created_by)
            total = query.count()
            items = (
                query.order_by(UploadSession.created_at.desc(), UploadSession.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return ResultPage(items=items, total=total, page=page, limit=limit)

    def questions_of(self, session_id: int) -> List[ExtractedQuestion]:
        with self._session_factory() as db:
            if db.get(UploadSession, session_id) is None:
                raise SessionNotFound(f"Upload session {session_id} not found")
            return (
                db.query(ExtractedQuestion)
                .filter(ExtractedQuestion.session_id == session_id)
                .order_by(ExtractedQuestion.position)
                .all()
            )

    # Writes below are only issued by the orchestrator driving the session.

    def mark_processing(self, session_id: int) -> UploadSession:
        return self._transition(session_id, "processing", started_at=utcnow())

    def commit_page(
        self, session_id: int, page_number: int, candidates: Sequence[PageCandidate]
    ) -> List[ExtractedQuestion]:
        """
        Persist a page's questions and the running counter in one transaction.

        Rows are returned only after the commit, so callers can announce them
        without risking an announcement of uncommitted data.
        """
        try:
            with self._session_factory() as db:
                session = db.get(UploadSession, session_id)
                if session is None:
                    raise SessionNotFound(f"Upload session {session_id} not found")
                position = session.total_questions_extracted
                rows = []
                for candidate in candidates:
                    row = ExtractedQuestion(
                        session_id=session_id,
                        page_number=page_number,
                        position=position,
                        text=candidate.text,
                        options=list(candidate.options),
                        correct_index=candidate.correct_index,
                        image=candidate.image,
                        question_type=candidate.question_type,
                        promotion_status="pending",
                    )
                    db.add(row)
                    rows.append(row)
                    position += 1
                session.total_questions_extracted = position
                db.commit()
                for row in rows:
                    db.refresh(row)
                return rows
        except SQLAlchemyError as e:
            logger.error(f"Failed to commit page {page_number} of session {session_id}: {e}")
            raise SessionFatalError("Storage unavailable", str(e))

    def mark_completed(self, session_id: int) -> UploadSession:
        return self._transition(session_id, "completed", completed_at=utcnow())

    def mark_failed(self, session_id: int, error_message: str) -> UploadSession:
        return self._transition(session_id, "failed", completed_at=utcnow(), error_message=error_message)

    def _transition(self, session_id: int, status: str, **fields) -> UploadSession:
        order = {name: i for i, name in enumerate(SESSION_STATUSES)}
        try:
            with self._session_factory() as db:
                session = db.get(UploadSession, session_id)
                if session is None:
                    raise SessionNotFound(f"Upload session {session_id} not found")
                if session.status in ("completed", "failed"):
                    raise RuntimeError(f"Session {session_id} is already {session.status}")
                if order[status] < order[session.status]:
                    raise RuntimeError(f"Session {session_id} cannot move from {session.status} to {status}")
                session.status = status
                for name, value in fields.items():
                    setattr(session, name, value)
                db.commit()
                db.refresh(session)
                return session
        except SQLAlchemyError as e:
            logger.error(f"Failed to update session {session_id} to {status}: {e}")
            raise SessionFatalError("Storage unavailable", str(e))
