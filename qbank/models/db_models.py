from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Enum, JSON, Index
from sqlalchemy.orm import relationship
import datetime

from ..database import Base


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


SESSION_STATUSES = ("pending", "processing", "completed", "failed")
DIFFICULTIES = ("easy", "medium", "hard")


class UploadSession(Base):
    __tablename__ = 'upload_sessions'
    id = Column(Integer, primary_key=True, index=True)
    file_name = Column(String(450), nullable=False)
    document_ref = Column(Text, nullable=False)
    subject = Column(String(200), nullable=False)
    start_page = Column(Integer, nullable=False, default=1)
    num_pages = Column(Integer, nullable=False, default=1)
    status = Column(Enum(*SESSION_STATUSES, name="session_status"), nullable=False, default="pending")
    total_questions_extracted = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    questions = relationship(
        "ExtractedQuestion",
        back_populates="session",
        cascade="all, delete",
        order_by="ExtractedQuestion.position",
    )

    __table_args__ = (Index("ix_upload_sessions_owner_recent", "created_by", "created_at"),)


class ExtractedQuestion(Base):
    __tablename__ = 'extracted_questions'
    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False, default=list)
    correct_index = Column(Integer, nullable=True)
    image = Column(Text, nullable=True)
    question_type = Column(Enum("objective", "subjective", name="question_type"), nullable=False, default="objective")
    promotion_status = Column(Enum("pending", "promoted", name="promotion_status"), nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow)

    session = relationship("UploadSession", back_populates="questions")


class QuestionBankEntry(Base):
    __tablename__ = 'question_bank_entries'
    id = Column(Integer, primary_key=True, index=True)
    text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False, default=list)
    correct_index = Column(Integer, nullable=True)
    image = Column(Text, nullable=True)
    subject = Column(String(200), nullable=False, index=True)
    chapter = Column(String(200), nullable=True)
    topics = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    difficulty = Column(Enum(*DIFFICULTIES, name="difficulty"), nullable=False, default="medium")
    description = Column(Text, nullable=True)
    vector_ref = Column(String(64), nullable=True, index=True)
    session_id = Column(Integer, ForeignKey("upload_sessions.id", ondelete="SET NULL"), nullable=True)
    extracted_question_id = Column(Integer, ForeignKey("extracted_questions.id", ondelete="SET NULL"), nullable=True)
    source_page = Column(Integer, nullable=True)
    content_hash = Column(String(64), nullable=False, unique=True, index=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class QuestionPaper(Base):
    __tablename__ = 'question_papers'
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(450), nullable=False)
    description = Column(Text, nullable=True)
    subject = Column(String(200), nullable=False)
    chapter = Column(String(200), nullable=True)
    model_version = Column(Enum("v1", "v1.5", "v2", name="model_version"), nullable=False)
    requested_counts = Column(JSON, nullable=False, default=dict)
    entry_ids = Column(JSON, nullable=False, default=list)
    generation_meta = Column(JSON, nullable=False, default=dict)
    status = Column(Enum("draft", "finalized", "archived", name="paper_status"), nullable=False, default="draft")
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_question_papers_subject_recent", "subject", "created_at"),)
