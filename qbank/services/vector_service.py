import abc
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .. import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BankFilter:
    subject: str
    chapter: Optional[str] = None
    difficulty: Optional[str] = None
    tags: Tuple[str, ...] = ()
    topics: Tuple[str, ...] = ()

    def accepts(self, topics: Sequence[str], tags: Sequence[str]) -> bool:
        """Tag and topic filters match when an entry carries any requested label."""
        if self.tags and not _overlaps(self.tags, tags):
            return False
        if self.topics and not _overlaps(self.topics, topics):
            return False
        return True


@dataclass(frozen=True)
class IndexedEntry:
    entry_id: int
    text: str
    subject: str
    difficulty: str
    chapter: Optional[str] = None
    topics: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    vector_ref: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    entry_id: int
    score: float
    difficulty: str
    subject: str
    chapter: Optional[str] = None
    topics: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()


def _overlaps(wanted: Sequence[str], present: Sequence[str]) -> bool:
    present_lower = {p.lower() for p in present}
    return any(w.lower() in present_lower for w in wanted)


class QuestionBankIndex(abc.ABC):
    """Similarity index over bank entries."""

    @abc.abstractmethod
    async def upsert(self, entry: IndexedEntry) -> str:
        """Index or re-index an entry; returns its vector reference."""

    @abc.abstractmethod
    async def query(self, filters: BankFilter, bias_text: str, limit: int) -> List[Candidate]:
        """Return up to ``limit`` matching candidates, most similar first."""

    @abc.abstractmethod
    async def list_metadata(self, filters: BankFilter) -> List[Candidate]:
        """Return every matching entry (score 0), in index order."""

    @abc.abstractmethod
    async def delete(self, vector_ref: str) -> None:
        pass


def _join_labels(labels: Sequence[str]) -> str:
    return "|".join(labels)


def _split_labels(value) -> Tuple[str, ...]:
    return tuple(v for v in str(value or "").split("|") if v)


class ChromaQuestionBankIndex(QuestionBankIndex):
    def __init__(self, client=None, embeddings=None, collection_name: str = config.CHROMA_COLLECTION):
        if client is None:
            import chromadb
            os.makedirs(config.CHROMA_DB_PATH, exist_ok=True)
            client = chromadb.PersistentClient(path=config.CHROMA_DB_PATH)
            logger.info(f"Initialized Chroma client with persist directory: {config.CHROMA_DB_PATH}")
        if embeddings is None:
            from langchain_openai import OpenAIEmbeddings
            embeddings = OpenAIEmbeddings(model=config.EMBEDDING_MODEL)
        self.client = client
        self.embeddings = embeddings
        self.collection = client.get_or_create_collection(
            name=collection_name, metadata={"hnsw:space": "cosine"}
        )

    async def upsert(self, entry: IndexedEntry) -> str:
        vector_ref = entry.vector_ref or uuid.uuid4().hex
        vector = await self.embeddings.aembed_query(self._embedding_text(entry))
        metadata = {
            "entry_id": entry.entry_id,
            "subject": entry.subject,
            "chapter": entry.chapter or "",
            "difficulty": entry.difficulty,
            "topics": _join_labels(entry.topics),
            "tags": _join_labels(entry.tags),
        }
        await asyncio.to_thread(
            self.collection.upsert,
            ids=[vector_ref],
            embeddings=[vector],
            documents=[entry.text],
            metadatas=[metadata],
        )
        logger.info(f"Indexed bank entry {entry.entry_id} as {vector_ref}")
        return vector_ref

    async def query(self, filters: BankFilter, bias_text: str, limit: int) -> List[Candidate]:
        count = await asyncio.to_thread(self.collection.count)
        if count == 0 or limit < 1:
            return []
        vector = await self.embeddings.aembed_query(bias_text)
        # Tag/topic filters are applied after the similarity search, so fetch extra
        n_results = min(count, limit * 3 if (filters.tags or filters.topics) else limit)
        results = await asyncio.to_thread(
            self.collection.query,
            query_embeddings=[vector],
            n_results=n_results,
            where=self._where(filters),
            include=["metadatas", "distances"],
        )
        candidates = []
        for metadata, distance in zip(results["metadatas"][0], results["distances"][0]):
            candidate = self._candidate(metadata, 1.0 - float(distance))
            if filters.accepts(candidate.topics, candidate.tags):
                candidates.append(candidate)
        return candidates[:limit]

    async def list_metadata(self, filters: BankFilter) -> List[Candidate]:
        results = await asyncio.to_thread(
            self.collection.get, where=self._where(filters), include=["metadatas"]
        )
        candidates = [self._candidate(m, 0.0) for m in results["metadatas"]]
        return [c for c in candidates if filters.accepts(c.topics, c.tags)]

    async def delete(self, vector_ref: str) -> None:
        await asyncio.to_thread(self.collection.delete, ids=[vector_ref])

    @staticmethod
    def _embedding_text(entry: IndexedEntry) -> str:
        parts = [entry.subject, entry.chapter or "", " ".join(entry.topics), " ".join(entry.tags), entry.text]
        return "\n".join(p for p in parts if p)

    @staticmethod
    def _where(filters: BankFilter) -> Optional[Dict]:
        conditions = [{"subject": filters.subject}]
        if filters.chapter:
            conditions.append({"chapter": filters.chapter})
        if filters.difficulty:
            conditions.append({"difficulty": filters.difficulty})
        return conditions[0] if len(conditions) == 1 else {"$and": conditions}

    @staticmethod
    def _candidate(metadata: Dict, score: float) -> Candidate:
        return Candidate(
            entry_id=int(metadata["entry_id"]),
            score=score,
            difficulty=metadata["difficulty"],
            subject=metadata["subject"],
            chapter=metadata.get("chapter") or None,
            topics=_split_labels(metadata.get("topics")),
            tags=_split_labels(metadata.get("tags")),
        )
