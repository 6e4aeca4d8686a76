import asyncio
import datetime
import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..models.db_models import DIFFICULTIES, ExtractedQuestion, QuestionBankEntry, UploadSession, utcnow
from ..models.schemas import BankEntryCreate, BankEntryUpdate, PromoteRequest, PromotionResult
from .errors import EntryNotFound, InvalidRequestError
from .session_store import MAX_PAGE_SIZE, ResultPage
from .vector_service import BankFilter, IndexedEntry, QuestionBankIndex

logger = logging.getLogger(__name__)


def content_hash(text: str, options: Iterable[str]) -> str:
    """Hash of whitespace- and case-normalized question text and options."""
    normalized = [" ".join(text.split()).lower()]
    normalized.extend(" ".join(o.split()).lower() for o in options)
    return hashlib.sha256("\n".join(normalized).encode("utf-8")).hexdigest()


def _clean_labels(labels: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for label in labels:
        label = " ".join(label.split())
        if label and label.lower() not in seen:
            seen.add(label.lower())
            result.append(label)
    return result


class BankService:
    """Moves extracted questions into the indexed question bank and maintains entries."""

    def __init__(self, session_factory, index: QuestionBankIndex):
        self._session_factory = session_factory
        self.index = index

    async def promote(self, request: PromoteRequest, created_by: Optional[str] = None) -> List[PromotionResult]:
        results = []
        for question_id in request.question_ids:
            with self._session_factory() as db:
                question = db.get(ExtractedQuestion, question_id)
                if question is None:
                    raise EntryNotFound(f"Extracted question {question_id} not found")
                session = db.get(UploadSession, question.session_id)
                fields = dict(
                    text=question.text,
                    options=list(question.options or []),
                    correct_index=question.correct_index,
                    image=question.image,
                    subject=session.subject,
                    chapter=request.chapter,
                    difficulty=request.difficulty,
                    topics=_clean_labels(request.topics),
                    tags=_clean_labels(request.tags),
                    description=request.description,
                    session_id=question.session_id,
                    extracted_question_id=question.id,
                    source_page=question.page_number,
                    created_by=created_by,
                )
            entry, created = await self._store(fields)
            with self._session_factory() as db:
                question = db.get(ExtractedQuestion, question_id)
                question.promotion_status = "promoted"
                db.commit()
            results.append(PromotionResult(extracted_question_id=question_id, entry_id=entry.id, created=created))
        logger.info(f"Promoted {len(results)} questions ({sum(r.created for r in results)} new bank entries)")
        return results

    async def create(self, payload: BankEntryCreate, created_by: Optional[str] = None) -> QuestionBankEntry:
        if payload.correct_index is not None and not 0 <= payload.correct_index < len(payload.options):
            raise InvalidRequestError("correct_index must refer to one of the options")
        entry, created = await self._store(dict(
            text=payload.text.strip(),
            options=[o.strip() for o in payload.options],
            correct_index=payload.correct_index,
            image=payload.image,
            subject=payload.subject.strip(),
            chapter=payload.chapter,
            difficulty=payload.difficulty,
            topics=_clean_labels(payload.topics),
            tags=_clean_labels(payload.tags),
            description=payload.description,
            created_by=created_by,
        ))
        if not created:
            raise InvalidRequestError(f"An identical question already exists in the bank (entry {entry.id})")
        return entry

    async def update(self, entry_id: int, payload: BankEntryUpdate) -> QuestionBankEntry:
        changes = payload.model_dump(exclude_unset=True)
        for key in ("topics", "tags"):
            if changes.get(key) is not None:
                changes[key] = _clean_labels(changes[key])
        with self._session_factory() as db:
            entry = db.get(QuestionBankEntry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Bank entry {entry_id} not found")
            for name, value in changes.items():
                if value is not None or name in ("chapter", "description"):
                    setattr(entry, name, value)
            db.flush()
            await self.index.upsert(self._indexed(entry))
            db.commit()
            db.refresh(entry)
            logger.info(f"Updated bank entry {entry_id}: {sorted(changes)}")
            return entry

    def get(self, entry_id: int) -> QuestionBankEntry:
        with self._session_factory() as db:
            entry = db.get(QuestionBankEntry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Bank entry {entry_id} not found")
            return entry

    def get_many(self, entry_ids: Iterable[int]) -> Dict[int, QuestionBankEntry]:
        ids = list(entry_ids)
        if not ids:
            return {}
        with self._session_factory() as db:
            entries = db.query(QuestionBankEntry).filter(QuestionBankEntry.id.in_(ids)).all()
            return {e.id: e for e in entries}

    def browse(
        self,
        subject: Optional[str] = None,
        chapter: Optional[str] = None,
        difficulty: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ResultPage:
        """Newest-first page of entries; ``search`` matches question text."""
        if difficulty is not None and difficulty not in DIFFICULTIES:
            raise InvalidRequestError(f"Unknown difficulty {difficulty!r}")
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = (page - 1) * limit

        with self._session_factory() as db:
            query = db.query(QuestionBankEntry)
            if subject:
                query = query.filter(QuestionBankEntry.subject == subject)
            if chapter:
                query = query.filter(QuestionBankEntry.chapter == chapter)
            if difficulty:
                query = query.filter(QuestionBankEntry.difficulty == difficulty)
            if search and search.strip():
                query = query.filter(QuestionBankEntry.text.ilike(f"%{search.strip()}%"))
            query = query.order_by(QuestionBankEntry.created_at.desc(), QuestionBankEntry.id.desc())

            if not tag:
                total = query.count()
                return ResultPage(items=query.offset(offset).limit(limit).all(), total=total, page=page, limit=limit)

            # labels live in a JSON column, so the tag filter runs here
            wanted = tag.strip().lower()
            matching = [e for e in query.all() if wanted in {t.lower() for t in e.tags or []}]
            return ResultPage(items=matching[offset:offset + limit], total=len(matching), page=page, limit=limit)

    async def search_similar(
        self,
        query: Optional[str] = None,
        entry_id: Optional[int] = None,
        subject: Optional[str] = None,
        difficulty: Optional[str] = None,
        top_k: int = 10,
    ) -> List[Tuple[QuestionBankEntry, float]]:
        """
        Entries most similar to a free-text query or to an existing entry.

        When ``entry_id`` is given its text is the query, its subject is the
        default subject and the entry itself is left out of the results.
        """
        if entry_id is not None:
            source = await asyncio.to_thread(self.get, entry_id)
            query = query or source.text
            subject = subject or source.subject
        if not query or not query.strip():
            raise InvalidRequestError("A query or an entry id is required")
        if not subject:
            raise InvalidRequestError("subject is required for a free-text similarity search")

        limit = top_k + 1 if entry_id is not None else top_k
        candidates = await self.index.query(BankFilter(subject=subject, difficulty=difficulty), query.strip(), limit)
        candidates = [c for c in candidates if c.entry_id != entry_id][:top_k]
        entries = await asyncio.to_thread(self.get_many, [c.entry_id for c in candidates])
        return [(entries[c.entry_id], c.score) for c in candidates if c.entry_id in entries]

    def filter_options(self) -> Dict:
        with self._session_factory() as db:
            rows = db.query(
                QuestionBankEntry.subject, QuestionBankEntry.chapter, QuestionBankEntry.topics, QuestionBankEntry.tags
            ).all()

        chapters: Dict[str, set] = {}
        topics, tags = set(), set()
        for subject, chapter, entry_topics, entry_tags in rows:
            subject_chapters = chapters.setdefault(subject, set())
            if chapter:
                subject_chapters.add(chapter)
            topics.update(entry_topics or [])
            tags.update(entry_tags or [])
        return {
            "subjects": sorted(chapters),
            "chapters_by_subject": {s: sorted(c) for s, c in sorted(chapters.items())},
            "difficulties": list(DIFFICULTIES),
            "topics": sorted(topics),
            "tags": sorted(tags),
        }

    def stats(self, recent_days: int = 7) -> Dict:
        cutoff = utcnow() - datetime.timedelta(days=recent_days)
        with self._session_factory() as db:
            total = db.query(QuestionBankEntry).count()
            recent = db.query(QuestionBankEntry).filter(QuestionBankEntry.created_at >= cutoff).count()
            by_subject = (
                db.query(QuestionBankEntry.subject, func.count(QuestionBankEntry.id))
                .group_by(QuestionBankEntry.subject)
                .order_by(func.count(QuestionBankEntry.id).desc(), QuestionBankEntry.subject)
                .all()
            )
            by_difficulty = dict(
                db.query(QuestionBankEntry.difficulty, func.count(QuestionBankEntry.id))
                .group_by(QuestionBankEntry.difficulty)
                .all()
            )
        return {
            "total": total,
            "recent_count": recent,
            "by_subject": [{"subject": s, "count": n} for s, n in by_subject],
            "by_difficulty": [{"difficulty": d, "count": by_difficulty.get(d, 0)} for d in DIFFICULTIES],
        }

    async def delete(self, entry_id: int) -> None:
        """Remove an entry from the database and the index."""
        with self._session_factory() as db:
            entry = db.get(QuestionBankEntry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Bank entry {entry_id} not found")
            vector_ref = entry.vector_ref
            db.delete(entry)
            db.flush()
            if vector_ref:
                await self.index.delete(vector_ref)
            db.commit()
        logger.info(f"Deleted bank entry {entry_id}")

    async def _store(self, fields: dict):
        """Insert and index an entry; an identical existing entry is returned instead."""
        digest = content_hash(fields["text"], fields["options"])
        with self._session_factory() as db:
            existing = db.query(QuestionBankEntry).filter(QuestionBankEntry.content_hash == digest).first()
            if existing is not None:
                logger.info(f"Question already in bank as entry {existing.id}")
                return existing, False

            entry = QuestionBankEntry(content_hash=digest, **fields)
            db.add(entry)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                existing = db.query(QuestionBankEntry).filter(QuestionBankEntry.content_hash == digest).one()
                return existing, False

            vector_ref = await self.index.upsert(self._indexed(entry))
            entry.vector_ref = vector_ref
            try:
                db.commit()
            except Exception:
                await self.index.delete(vector_ref)
                raise
            db.refresh(entry)
            logger.info(f"Added bank entry {entry.id} ({entry.subject}/{entry.difficulty})")
            return entry, True

    @staticmethod
    def _indexed(entry: QuestionBankEntry) -> IndexedEntry:
        return IndexedEntry(
            entry_id=entry.id,
            text=entry.text,
            subject=entry.subject,
            difficulty=entry.difficulty,
            chapter=entry.chapter,
            topics=tuple(entry.topics or ()),
            tags=tuple(entry.tags or ()),
            vector_ref=entry.vector_ref,
        )
