import abc
import json
import logging
from typing import List, Literal, Optional

from langchain_core.prompts import ChatPromptTemplate
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .. import config
from .document_service import PageContent
from .errors import PageExtractionError

logger = logging.getLogger(__name__)


class ExtractionCandidate(BaseModel):
    """
    One question as returned by an extraction backend.

    Field precedence is fixed: the question text is read from ``question``,
    falling back to ``text``; the correct option is ``correct_index`` when
    given, otherwise the option whose text equals ``answer``. Any other key is
    rejected.
    """

    model_config = ConfigDict(extra="forbid")

    question: str = Field(min_length=1, validation_alias=AliasChoices("question", "text"))
    options: List[str] = Field(default_factory=list)
    correct_index: Optional[int] = None
    answer: Optional[str] = None
    image: Optional[str] = None
    question_type: Optional[Literal["objective", "subjective"]] = None

    @model_validator(mode="before")
    @classmethod
    def _question_over_text(cls, data):
        if isinstance(data, dict) and "question" in data and "text" in data:
            data = {k: v for k, v in data.items() if k != "text"}
        return data

    @model_validator(mode="after")
    def _resolve(self):
        self.question = self.question.strip()
        if not self.question:
            raise ValueError("question text is empty")
        self.options = [o.strip() for o in self.options]
        if self.correct_index is not None and not 0 <= self.correct_index < len(self.options):
            raise ValueError(f"correct_index {self.correct_index} is outside {len(self.options)} options")
        if self.correct_index is None and self.answer:
            matches = [i for i, o in enumerate(self.options) if o == self.answer.strip()]
            if len(matches) == 1:
                self.correct_index = matches[0]
        if self.question_type is None:
            self.question_type = "objective" if self.options else "subjective"
        return self


class ExtractionClient(abc.ABC):
    """Turns one document page into zero or more candidate questions."""

    def for_subject(self, subject: str) -> "ExtractionClient":
        return self

    @abc.abstractmethod
    async def extract(self, page: PageContent) -> List[ExtractionCandidate]:
        """Raise PageExtractionError when the page cannot be extracted."""


def parse_candidates(raw: str, page_number: int) -> List[ExtractionCandidate]:
    """Parse a JSON payload (a list, or an object with a ``questions`` list)."""
    content = raw.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise PageExtractionError(page_number, f"Response is not valid JSON: {e}")

    if isinstance(data, dict):
        if set(data.keys()) != {"questions"}:
            raise PageExtractionError(page_number, "Response object must contain only a 'questions' list")
        data = data["questions"]
    if not isinstance(data, list):
        raise PageExtractionError(page_number, "Response must be a list of questions")

    candidates = []
    for i, item in enumerate(data):
        try:
            candidates.append(ExtractionCandidate.model_validate(item))
        except ValidationError as e:
            raise PageExtractionError(page_number, f"Question {i + 1} does not match the schema: {e.errors()[0]['msg']}")
    return candidates


EXTRACTION_PROMPT = ChatPromptTemplate.from_template("""
You extract exam questions from one page of a {subject} question bank.

Page {page_number} text:
{page_text}

Instructions:
1. Return every complete question on the page, in reading order
2. Do not invent questions or options that are not on the page
3. Keep mathematical notation as written
4. For multiple choice questions list the options without their labels (A, B, 1, ...)
5. Set "correct_index" (0-based) only if the page marks the answer
6. Open questions have an empty "options" list and "question_type": "subjective"
7. If the page has no questions return an empty list
8. The response must be parseable JSON and nothing else

Response format:
[
    {{
        "question": "Question text",
        "options": ["first option", "second option", "third option", "fourth option"],
        "correct_index": 0,
        "question_type": "objective"
    }}
]
""")


class LLMExtractionClient(ExtractionClient):
    def __init__(self, subject: str = "", llm=None):
        if llm is None:
            from langchain_openai import ChatOpenAI
            llm = ChatOpenAI(temperature=config.EXTRACTION_TEMPERATURE, model=config.EXTRACTION_MODEL)
        self.llm = llm
        self.subject = subject

    def for_subject(self, subject: str) -> "LLMExtractionClient":
        return LLMExtractionClient(subject=subject, llm=self.llm)

    async def extract(self, page: PageContent) -> List[ExtractionCandidate]:
        if not page.text.strip():
            logger.info(f"Page {page.page_number} has no extractable text")
            return []

        prompt = EXTRACTION_PROMPT.format_messages(
            subject=self.subject or "general",
            page_number=page.page_number,
            page_text=page.text,
        )
        try:
            response = await self.llm.ainvoke(prompt)
        except Exception as e:
            logger.warning(f"Extraction call failed for page {page.page_number}: {e}")
            raise PageExtractionError(page.page_number, f"Extraction call failed: {e}")

        candidates = parse_candidates(response.content, page.page_number)
        logger.info(f"Extracted {len(candidates)} questions from page {page.page_number}")
        return candidates
