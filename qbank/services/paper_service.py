import asyncio
import logging
from typing import Optional

from ..models.db_models import QuestionPaper
from ..models.schemas import (
    GeneratedPaperResponse, ItemSource, PaperItem, PaperMeta, PaperRequest, PaperSaveRequest, PaperUpdate,
)
from .bank_service import BankService
from .errors import InvalidRequestError, PaperNotFound
from .paper_engine import AssemblyResult, PaperEngine
from .session_store import MAX_PAGE_SIZE, ResultPage

logger = logging.getLogger(__name__)

PAPER_STATUSES = ("draft", "finalized", "archived")


class PaperService:
    """Generates papers from the bank and keeps the history of saved ones."""

    def __init__(self, session_factory, engine: PaperEngine, bank: BankService):
        self._session_factory = session_factory
        self.engine = engine
        self.bank = bank

    async def generate(self, request: PaperRequest, model_version: str = "v1") -> GeneratedPaperResponse:
        strategies = {
            "v1": self.engine.generate_v1,
            "v1.5": self.engine.generate_v1_5,
            "v2": self.engine.generate_v2,
        }
        if model_version not in strategies:
            raise InvalidRequestError(f"Unknown model version {model_version!r}")
        logger.info(f"Generating {model_version} paper for {request.subject} {request.requested()}")
        result = await strategies[model_version](request)
        return await asyncio.to_thread(self.hydrate, result)

    def hydrate(self, result: AssemblyResult) -> GeneratedPaperResponse:
        entries = self.bank.get_many(item.entry_id for item in result.selected)
        missing = [item.entry_id for item in result.selected if item.entry_id not in entries]
        if missing:
            # Indexed but no longer stored; leave them out and report them as shortfall
            logger.warning(f"Bank entries {missing} are indexed but missing from the database")
            result.selected = [item for item in result.selected if item.entry_id in entries]

        items = []
        for item in result.selected:
            entry = entries[item.entry_id]
            if entry.difficulty != item.difficulty:
                # the index is stale; the item stays in the bucket it filled
                logger.warning(
                    f"Bank entry {entry.id} is {entry.difficulty} but indexed as {item.difficulty}; re-index it"
                )
            items.append(PaperItem(
                entry_id=entry.id,
                text=entry.text,
                options=list(entry.options or []),
                correct_index=entry.correct_index,
                image=entry.image,
                subject=entry.subject,
                chapter=entry.chapter,
                difficulty=item.difficulty,
                topics=list(entry.topics or []),
                tags=list(entry.tags or []),
                source=ItemSource(score=round(item.score, 4), keyword=item.keyword, permutation=item.permutation),
            ))

        meta = PaperMeta(
            model_version=result.model_version,
            requested=result.requested,
            generated=result.generated,
            shortfall=result.shortfall,
            quota_met=result.quota_met,
            iterations=result.iterations,
            permutations_available=result.permutations_available,
            permutations_used=result.permutations_used,
            topics_discovered=result.topics_discovered,
            tags_discovered=result.tags_discovered,
            keywords_used=result.keywords_used,
            evaluation=result.evaluation,
        )
        return GeneratedPaperResponse(data=items, meta=meta)

    def save(self, payload: PaperSaveRequest, created_by: Optional[str] = None) -> QuestionPaper:
        self._check_entries(payload.entry_ids)

        with self._session_factory() as db:
            paper = QuestionPaper(
                title=payload.title.strip(),
                description=payload.description,
                subject=payload.subject,
                chapter=payload.chapter,
                model_version=payload.model_version,
                requested_counts=payload.requested_counts,
                entry_ids=payload.entry_ids,
                generation_meta=payload.generation_meta,
                status=payload.status,
                created_by=created_by,
            )
            db.add(paper)
            db.commit()
            db.refresh(paper)
            logger.info(f"Saved paper {paper.id} '{paper.title}' with {len(paper.entry_ids)} questions")
            return paper

    def get(self, paper_id: int) -> QuestionPaper:
        with self._session_factory() as db:
            paper = db.get(QuestionPaper, paper_id)
            if paper is None:
                raise PaperNotFound(f"Paper {paper_id} not found")
            return paper

    def list(
        self,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        created_by: Optional[str] = None,
    ) -> ResultPage:
        if status is not None and status not in PAPER_STATUSES:
            raise InvalidRequestError(f"Unknown status {status!r}")
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        with self._session_factory() as db:
            query = db.query(QuestionPaper)
            if status is not None:
                query = query.filter(QuestionPaper.status == status)
            if created_by is not None:
                query = query.filter(QuestionPaper.created_by == created_by)
            total = query.count()
            items = (
                query.order_by(QuestionPaper.created_at.desc(), QuestionPaper.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return ResultPage(items=items, total=total, page=page, limit=limit)

    def update(self, paper_id: int, payload: PaperUpdate) -> QuestionPaper:
        changes = payload.model_dump(exclude_unset=True)
        for name in ("title", "status", "entry_ids"):
            if name in changes and changes[name] is None:
                raise InvalidRequestError(f"{name} cannot be cleared")
        if "entry_ids" in changes:
            self._check_entries(changes["entry_ids"])
        if changes.get("title"):
            changes["title"] = changes["title"].strip()

        with self._session_factory() as db:
            paper = db.get(QuestionPaper, paper_id)
            if paper is None:
                raise PaperNotFound(f"Paper {paper_id} not found")
            for name, value in changes.items():
                setattr(paper, name, value)
            db.commit()
            db.refresh(paper)
            logger.info(f"Updated paper {paper_id}: {sorted(changes)}")
            return paper

    def delete(self, paper_id: int) -> None:
        with self._session_factory() as db:
            paper = db.get(QuestionPaper, paper_id)
            if paper is None:
                raise PaperNotFound(f"Paper {paper_id} not found")
            db.delete(paper)
            db.commit()
        logger.info(f"Deleted paper {paper_id}")

    def duplicate(self, paper_id: int, created_by: Optional[str] = None) -> QuestionPaper:
        """Copy a paper as a new draft."""
        with self._session_factory() as db:
            source = db.get(QuestionPaper, paper_id)
            if source is None:
                raise PaperNotFound(f"Paper {paper_id} not found")
            paper = QuestionPaper(
                title=f"{source.title} (Copy)",
                description=source.description,
                subject=source.subject,
                chapter=source.chapter,
                model_version=source.model_version,
                requested_counts=dict(source.requested_counts or {}),
                entry_ids=list(source.entry_ids or []),
                generation_meta=dict(source.generation_meta or {}),
                status="draft",
                created_by=created_by,
            )
            db.add(paper)
            db.commit()
            db.refresh(paper)
            logger.info(f"Duplicated paper {paper_id} as {paper.id}")
            return paper

    def _check_entries(self, entry_ids) -> None:
        if len(set(entry_ids)) != len(entry_ids):
            raise InvalidRequestError("A paper cannot contain the same question twice")
        found = self.bank.get_many(entry_ids)
        unknown = [i for i in entry_ids if i not in found]
        if unknown:
            raise InvalidRequestError(f"Unknown bank entries: {unknown}")
