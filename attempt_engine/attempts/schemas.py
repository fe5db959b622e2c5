"""
Assessment API Schemas

Pydantic models for the payloads exchanged with the assessment API: the
read-only assessment definition, the submission response and the
submission history. Field names follow the API's camelCase on the wire and
snake_case in Python.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from attempt_engine.common.error_handling import DefinitionValidationError

logger = logging.getLogger(__name__)


class AssessmentKind(str, Enum):
    """Kinds of timed assessment handled by the controller"""
    QUIZ = "quiz"
    SKILL_TEST = "skill_test"


class ApiModel(BaseModel):
    """Base model accepting both camelCase and snake_case field names"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Question(ApiModel):
    """
    A single question of an assessment.

    A question with sub-questions (matching, completion, identifying
    information) is answered with one value per sub-question; any other
    question takes a single scalar answer.
    """
    id: int
    question: str = ""
    question_type: str = Field(default="MULTIPLE_CHOICE", alias="type")
    sub_questions: List[Any] = Field(default_factory=list)
    options: List[Any] = Field(default_factory=list)
    points: float = 1.0
    order: int = 0

    @model_validator(mode="before")
    @classmethod
    def _none_lists(cls, data: Any) -> Any:
        # The API sends null for questions without sub-questions or options
        if isinstance(data, dict):
            data = dict(data)
            for key in ("subQuestions", "sub_questions", "options"):
                if key in data and data[key] is None:
                    data[key] = []
        return data

    @property
    def is_grouped(self) -> bool:
        return len(self.sub_questions) > 0


class QuestionGroup(ApiModel):
    """An ordered group of questions sharing instructions or a passage"""
    id: Optional[int] = None
    title: str = ""
    questions: List[Question] = Field(default_factory=list)


class Section(ApiModel):
    """
    An ordered section of an assessment.

    Sections may list their questions directly; those are folded into a
    single leading group so that every section is a sequence of groups.
    """
    id: Optional[int] = None
    title: str = ""
    order: int = 0
    question_groups: List[QuestionGroup] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fold_questions(self) -> "Section":
        if self.questions:
            self.question_groups.insert(0, QuestionGroup(questions=self.questions))
            self.questions = []
        return self

    def iter_questions(self) -> Iterator[Question]:
        for group in self.question_groups:
            yield from group.questions


class AssessmentDefinition(ApiModel):
    """
    Read-only definition of a timed assessment.

    A quiz arrives as a flat question list and is normalised into a single
    section. ``time_limit`` and ``max_attempts`` are kept as received; use
    ``effective_time_limit`` and ``effective_max_attempts`` for the values
    the controller actually applies.
    """
    id: int
    title: str = ""
    kind: AssessmentKind = AssessmentKind.QUIZ
    status: Optional[str] = None
    time_limit: Optional[int] = None
    max_attempts: Optional[int] = None
    sections: List[Section] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fold_quiz_questions(self) -> "AssessmentDefinition":
        if self.questions:
            self.sections.insert(0, Section(title=self.title, questions=self.questions))
            self.questions = []
        return self

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], kind: AssessmentKind) -> "AssessmentDefinition":
        """
        Build a definition from an API payload.

        Args:
            payload: Decoded JSON body of the definition endpoint
            kind: Kind of assessment the payload was fetched as

        Returns:
            Parsed definition
        """
        data = dict(payload)
        data["kind"] = kind
        return cls.model_validate(data)

    @property
    def section_count(self) -> int:
        return len(self.sections)

    def effective_time_limit(self, default_minutes: int = 15) -> int:
        """Time limit in minutes, falling back to the default when unset or zero"""
        return self.time_limit if self.time_limit and self.time_limit > 0 else default_minutes

    def effective_max_attempts(self, default: int = 1) -> int:
        """Maximum attempts, falling back to the default when unset or zero"""
        return self.max_attempts if self.max_attempts and self.max_attempts > 0 else default

    def iter_questions(self) -> Iterator[Question]:
        """Questions in definition order: section, then group, then question"""
        for section in self.sections:
            yield from section.iter_questions()

    def question_index(self) -> Dict[int, Question]:
        """Questions keyed by id"""
        return {q.id: q for q in self.iter_questions()}

    def ensure_attemptable(self) -> None:
        """
        Check the definition can back an attempt.

        Raises:
            DefinitionValidationError: If the definition has no sections or
                no questions
        """
        if not self.sections:
            raise DefinitionValidationError(self.id, "assessment has no sections")
        if next(self.iter_questions(), None) is None:
            raise DefinitionValidationError(self.id, "assessment has no questions")


class SubmissionResponse(ApiModel):
    """
    Result returned by the submit endpoint.

    Retake fields are optional because some deployments return the bare
    submission record; the reconciler derives them when missing.
    """
    id: Optional[int] = None
    score: float = 0.0
    total_points: float = 0.0
    attempt_number: Optional[int] = None
    can_retake: Optional[bool] = None
    remaining_attempts: Optional[int] = None
    best_score: Optional[float] = None


class SubmissionRecord(ApiModel):
    """One past submission in the history"""
    id: Optional[int] = None
    score: Optional[float] = None
    total_points: Optional[float] = None
    attempt_number: Optional[int] = None
    submitted_at: Optional[str] = None
    time_spent: Optional[int] = None


class SubmissionHistory(ApiModel):
    """A user's submission history on one assessment"""
    submissions: List[SubmissionRecord] = Field(default_factory=list)
    can_retake: bool = False
    remaining_attempts: int = 0
    current_attempt: int = 0
    max_score: Optional[float] = None

    @property
    def latest(self) -> Optional[SubmissionRecord]:
        return self.submissions[-1] if self.submissions else None
