"""
Event vocabulary for an extraction session stream.

A stream is ordered and follows:

    session_started
    (progress)*
    ( page_start question* (page_complete | page_error) )*
    (complete | error)

``complete`` and ``error`` are terminal; nothing follows them.
"""

from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, List, Literal, Optional, Union


class SessionStartedEvent(BaseModel):
    type: Literal["session_started"] = "session_started"
    session_id: int
    start_page: int
    total_pages: int


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    phase: str


class PageStartEvent(BaseModel):
    type: Literal["page_start"] = "page_start"
    page_num: int
    current_page: int
    total_pages: int


class QuestionEvent(BaseModel):
    type: Literal["question"] = "question"
    id: int
    page: int
    index: int
    text: str
    options: List[str]
    correct_index: Optional[int] = None
    image: Optional[str] = None
    question_type: Literal["objective", "subjective"] = "objective"


class PageCompleteEvent(BaseModel):
    type: Literal["page_complete"] = "page_complete"
    page_num: int
    total_so_far: int


class PageErrorEvent(BaseModel):
    type: Literal["page_error"] = "page_error"
    page_num: int
    error: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    total_questions: int


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    details: Optional[str] = None


Event = Annotated[
    Union[
        SessionStartedEvent,
        ProgressEvent,
        PageStartEvent,
        QuestionEvent,
        PageCompleteEvent,
        PageErrorEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

event_adapter = TypeAdapter(Event)

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})


def is_terminal(event) -> bool:
    return event.type in TERMINAL_EVENT_TYPES


def to_sse(event) -> str:
    """Format an event as a Server-Sent Events frame."""
    return f"data: {event.model_dump_json()}\n\n"


def parse_event(payload) -> BaseModel:
    """Validate a decoded JSON payload back into its event model."""
    return event_adapter.validate_python(payload)
