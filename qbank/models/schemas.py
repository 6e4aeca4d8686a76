from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional
import datetime

from .. import config

Difficulty = Literal["easy", "medium", "hard"]
ModelVersion = Literal["v1", "v1.5", "v2"]


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


# ----- Upload sessions -----
class SessionCreateRequest(BaseModel):
    document_ref: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    file_name: Optional[str] = None
    start_page: int = Field(default=1, ge=1)
    num_pages: int = Field(default=1, ge=1)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_name: str
    document_ref: str
    subject: str
    start_page: int
    num_pages: int
    status: str
    total_questions_extracted: int
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime.datetime
    started_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None


class SessionStartedResponse(BaseModel):
    session_id: int
    status: str
    message: str
    events_url: Optional[str] = None
    job_id: Optional[str] = None


class SessionListResponse(BaseModel):
    success: bool = True
    data: List[SessionResponse]
    meta: PageMeta


class ExtractedQuestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    page_number: int
    position: int
    text: str
    options: List[str]
    correct_index: Optional[int] = None
    image: Optional[str] = None
    question_type: str
    promotion_status: str


# ----- Question bank -----
class PromoteRequest(BaseModel):
    question_ids: List[int] = Field(min_length=1)
    difficulty: Difficulty = "medium"
    chapter: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class BankEntryCreate(BaseModel):
    text: str = Field(min_length=1)
    options: List[str] = Field(default_factory=list)
    correct_index: Optional[int] = None
    image: Optional[str] = None
    subject: str = Field(min_length=1)
    chapter: Optional[str] = None
    difficulty: Difficulty = "medium"
    topics: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class BankEntryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chapter: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    topics: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    description: Optional[str] = None


class BankEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    text: str
    options: List[str]
    correct_index: Optional[int] = None
    image: Optional[str] = None
    subject: str
    chapter: Optional[str] = None
    difficulty: str
    topics: List[str]
    tags: List[str]
    description: Optional[str] = None
    vector_ref: Optional[str] = None
    session_id: Optional[int] = None
    extracted_question_id: Optional[int] = None
    source_page: Optional[int] = None
    created_at: datetime.datetime


class BankEntryListResponse(BaseModel):
    success: bool = True
    data: List[BankEntryResponse]
    meta: PageMeta


class SimilarSearchRequest(BaseModel):
    query: Optional[str] = None
    entry_id: Optional[int] = None
    subject: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    top_k: int = Field(default=10, ge=1, le=50)


class SimilarEntryResponse(BankEntryResponse):
    similarity_score: float


class SimilarSearchResponse(BaseModel):
    success: bool = True
    data: List[SimilarEntryResponse]


class FilterOptionsResponse(BaseModel):
    subjects: List[str]
    chapters_by_subject: Dict[str, List[str]]
    difficulties: List[str]
    topics: List[str]
    tags: List[str]


class SubjectCount(BaseModel):
    subject: str
    count: int


class DifficultyCount(BaseModel):
    difficulty: str
    count: int


class BankStatsResponse(BaseModel):
    total: int
    recent_count: int
    by_subject: List[SubjectCount]
    by_difficulty: List[DifficultyCount]


class PromotionResult(BaseModel):
    extracted_question_id: int
    entry_id: int
    created: bool


class PromotionResponse(BaseModel):
    success: bool = True
    data: List[PromotionResult]


# ----- Paper generation -----
class PaperRequest(BaseModel):
    subject: str = Field(min_length=1)
    chapter: Optional[str] = None
    easy_count: int = Field(default=0, ge=0)
    medium_count: int = Field(default=0, ge=0)
    hard_count: int = Field(default=0, ge=0)
    tags: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    max_iterations: int = Field(default=config.DEFAULT_MAX_ITERATIONS, ge=1)

    def requested(self) -> Dict[str, int]:
        return {"easy": self.easy_count, "medium": self.medium_count, "hard": self.hard_count}


class EvaluationReport(BaseModel):
    overall_score: float
    coverage_score: float
    diversity_score: float
    difficulty_balance_score: float
    suggestions: List[str] = Field(default_factory=list)
    weak_areas: List[str] = Field(default_factory=list)
    missing_topics: List[str] = Field(default_factory=list)


class ItemSource(BaseModel):
    score: float
    keyword: Optional[str] = None
    permutation: Optional[str] = None


class PaperItem(BaseModel):
    entry_id: int
    text: str
    options: List[str]
    correct_index: Optional[int] = None
    image: Optional[str] = None
    subject: str
    chapter: Optional[str] = None
    difficulty: Difficulty
    topics: List[str]
    tags: List[str]
    source: ItemSource


class PaperMeta(BaseModel):
    model_version: ModelVersion
    requested: Dict[str, int]
    generated: Dict[str, int]
    shortfall: Dict[str, int]
    quota_met: bool
    iterations: int
    permutations_available: Optional[int] = None
    permutations_used: Optional[int] = None
    topics_discovered: Optional[int] = None
    tags_discovered: Optional[int] = None
    keywords_used: Optional[List[str]] = None
    evaluation: Optional[EvaluationReport] = None


class GeneratedPaperResponse(BaseModel):
    success: bool = True
    data: List[PaperItem]
    meta: PaperMeta


# ----- Saved papers -----
class PaperSaveRequest(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    subject: str = Field(min_length=1)
    chapter: Optional[str] = None
    model_version: ModelVersion
    requested_counts: Dict[str, int]
    entry_ids: List[int] = Field(min_length=1)
    generation_meta: dict = Field(default_factory=dict)
    status: Literal["draft", "finalized", "archived"] = "draft"


class PaperUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    chapter: Optional[str] = None
    entry_ids: Optional[List[int]] = Field(default=None, min_length=1)
    status: Optional[Literal["draft", "finalized", "archived"]] = None


class PaperResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    subject: str
    chapter: Optional[str] = None
    model_version: str
    requested_counts: Dict[str, int]
    entry_ids: List[int]
    generation_meta: dict
    status: str
    created_by: Optional[str] = None
    created_at: datetime.datetime


class PaperListResponse(BaseModel):
    success: bool = True
    data: List[PaperResponse]
    meta: PageMeta


# ----- Background jobs -----
class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    result: Optional[dict] = None
    error: Optional[str] = None
