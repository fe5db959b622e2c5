"""
Attempt Session Model

Pure data for one in-progress attempt plus the transition functions that
produce the next session from the current one. Nothing here performs I/O or
reads a clock; the controller passes wall-clock times in.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from attempt_engine.attempts.schemas import AssessmentDefinition, AssessmentKind, Question
from attempt_engine.common.storage.key_builder import KeyBuilder

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

ScalarType = Union[str, int, float]


#------------------------------------------------------------------------------
# Answer values
#------------------------------------------------------------------------------

def _scalar_text(value: ScalarType) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


@dataclass(frozen=True)
class Scalar:
    """Answer to a simple question"""
    value: ScalarType

    def is_blank(self) -> bool:
        return _scalar_text(self.value) == ""

    def to_wire(self) -> str:
        return _scalar_text(self.value)


@dataclass(frozen=True)
class Grouped:
    """Answers to the sub-questions of a grouped question, keyed by sub-index"""
    parts: Tuple[Tuple[str, ScalarType], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Mapping[Any, ScalarType]) -> "Grouped":
        return cls(tuple((str(k), v) for k, v in mapping.items()))

    def as_dict(self) -> Dict[str, ScalarType]:
        return dict(self.parts)

    def filled(self) -> "Grouped":
        """Copy without blank sub-answers"""
        return Grouped(tuple((k, v) for k, v in self.parts if _scalar_text(v) != ""))

    def is_blank(self) -> bool:
        return not self.filled().parts

    def to_wire(self) -> str:
        filled = {k: _scalar_text(v) for k, v in self.filled().parts}
        return json.dumps(filled, ensure_ascii=False)


AnswerValue = Union[Scalar, Grouped]


def coerce_answer(question: Question, value: Any) -> AnswerValue:
    """
    Turn a value handed in by the UI into the answer type the question takes.

    Args:
        question: Question being answered
        value: An AnswerValue, a scalar, a mapping of sub-answers or, for a
            grouped question, its JSON-encoded wire form

    Returns:
        The tagged answer value

    Raises:
        ValueError: If the value does not fit the question
    """
    if question.is_grouped:
        if isinstance(value, Grouped):
            return value
        if isinstance(value, Mapping):
            return Grouped.from_mapping(value)
        if isinstance(value, str):
            return decode_answer(question, value)
        raise ValueError(f"Question {question.id} takes one answer per sub-question")

    if isinstance(value, Scalar):
        return value
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return Scalar(value)
    raise ValueError(f"Question {question.id} takes a single text or numeric answer")


def decode_answer(question: Question, raw: Any) -> AnswerValue:
    """
    Decode the wire form of an answer using the question's metadata.

    Raises:
        ValueError: If a grouped answer is not a JSON object
    """
    if not question.is_grouped:
        if isinstance(raw, (str, int, float)) and not isinstance(raw, bool):
            return Scalar(raw)
        raise ValueError(f"Malformed answer for question {question.id}: {raw!r}")

    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed grouped answer for question {question.id}") from e
    if not isinstance(raw, Mapping):
        raise ValueError(f"Malformed grouped answer for question {question.id}: {raw!r}")
    return Grouped.from_mapping(raw)


#------------------------------------------------------------------------------
# Attempt session
#------------------------------------------------------------------------------

@dataclass(frozen=True)
class AttemptSession:
    """
    State of one in-progress attempt.

    Attributes:
        session_key: Store key of this attempt, derived from kind, user and assessment
        assessment_id: ID of the assessment being attempted
        user_id: ID of the user taking the attempt
        kind: Assessment kind
        answers: Answer per question id
        position_index: Current section index
        started_at_epoch_ms: When this attempt began; kept across resumes
        remaining_seconds: Seconds left on the countdown
        last_persisted_at_epoch_ms: When the session was last written to the store
    """
    session_key: str
    assessment_id: int
    user_id: Union[int, str]
    kind: AssessmentKind
    started_at_epoch_ms: int
    remaining_seconds: int
    answers: Dict[int, AnswerValue] = field(default_factory=dict)
    position_index: int = 0
    last_persisted_at_epoch_ms: Optional[int] = None

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-serializable durable record of this session"""
        return {
            "version": SNAPSHOT_VERSION,
            "assessmentId": self.assessment_id,
            "userId": self.user_id,
            "kind": self.kind.value,
            "answers": {str(qid): answer.to_wire() for qid, answer in self.answers.items()},
            "positionIndex": self.position_index,
            "remainingSeconds": self.remaining_seconds,
            "startedAtEpochMs": self.started_at_epoch_ms,
            "lastPersistedAtEpochMs": self.last_persisted_at_epoch_ms,
        }

    @classmethod
    def from_snapshot(
        cls,
        session_key: str,
        snapshot: Mapping[str, Any],
        definition: AssessmentDefinition
    ) -> "AttemptSession":
        """
        Rebuild a session from its durable record.

        Answers for questions the definition no longer has are dropped.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        questions = definition.question_index()
        answers: Dict[int, AnswerValue] = {}
        for raw_id, raw_value in dict(snapshot.get("answers") or {}).items():
            question = questions.get(int(raw_id))
            if question is None:
                logger.debug(f"Dropping stored answer for unknown question {raw_id}")
                continue
            answers[question.id] = decode_answer(question, raw_value)

        last_persisted = snapshot.get("lastPersistedAtEpochMs")
        return cls(
            session_key=session_key,
            assessment_id=int(snapshot["assessmentId"]),
            user_id=snapshot.get("userId"),
            kind=AssessmentKind(snapshot.get("kind", definition.kind.value)),
            answers=answers,
            position_index=clamp_position(int(snapshot.get("positionIndex", 0)), definition.section_count),
            started_at_epoch_ms=int(snapshot["startedAtEpochMs"]),
            remaining_seconds=max(0, int(snapshot["remainingSeconds"])),
            last_persisted_at_epoch_ms=int(last_persisted) if last_persisted is not None else None,
        )


#------------------------------------------------------------------------------
# Transitions
#------------------------------------------------------------------------------

def clamp_position(index: int, section_count: int) -> int:
    return max(0, min(index, max(0, section_count - 1)))


def new_session(
    definition: AssessmentDefinition,
    user_id: Union[int, str],
    now_ms: int,
    default_time_limit_minutes: int = 15
) -> AttemptSession:
    """
    Create a fresh session for a definition.

    Args:
        definition: Definition being attempted
        user_id: ID of the user taking the attempt
        now_ms: Current wall-clock time in epoch milliseconds
        default_time_limit_minutes: Time limit used when the definition has none

    Returns:
        Session with the full time limit, position 0 and no answers
    """
    return AttemptSession(
        session_key=KeyBuilder.attempt_key(definition.kind.value, user_id, definition.id),
        assessment_id=definition.id,
        user_id=user_id,
        kind=definition.kind,
        started_at_epoch_ms=now_ms,
        remaining_seconds=definition.effective_time_limit(default_time_limit_minutes) * 60,
    )


def elapsed_seconds(since_ms: Optional[int], now_ms: int) -> int:
    """Whole seconds from ``since_ms`` to ``now_ms``; never negative"""
    if since_ms is None:
        return 0
    return max(0, (now_ms - since_ms) // 1000)


def resume_session(session: AttemptSession, now_ms: int) -> AttemptSession:
    """
    Apply the elapsed-time correction to a session read back from the store.

    Time that passed since the last durable write is taken off the
    countdown, floored at zero.
    """
    gap = elapsed_seconds(session.last_persisted_at_epoch_ms, now_ms)
    return replace(session, remaining_seconds=max(0, session.remaining_seconds - gap))


def with_answer(session: AttemptSession, question_id: int, answer: Optional[AnswerValue]) -> AttemptSession:
    """Session with one answer replaced; a blank or missing answer removes the entry"""
    answers = dict(session.answers)
    if answer is None or answer.is_blank():
        answers.pop(question_id, None)
    else:
        answers[question_id] = answer
    return replace(session, answers=answers)


def with_position(session: AttemptSession, index: int, section_count: int) -> AttemptSession:
    return replace(session, position_index=clamp_position(index, section_count))


def with_tick(session: AttemptSession, seconds: int = 1) -> AttemptSession:
    """Session with the countdown decremented, floored at zero"""
    return replace(session, remaining_seconds=max(0, session.remaining_seconds - seconds))


def mark_persisted(session: AttemptSession, now_ms: int) -> AttemptSession:
    return replace(session, last_persisted_at_epoch_ms=now_ms)


def time_spent_seconds(session: AttemptSession, now_ms: int) -> int:
    return elapsed_seconds(session.started_at_epoch_ms, now_ms)


def is_stale(last_persisted_at_ms: Optional[int], now_ms: int, window_ms: int) -> bool:
    """Whether a record last written at ``last_persisted_at_ms`` is past the staleness window"""
    if last_persisted_at_ms is None:
        return True
    return now_ms - last_persisted_at_ms > window_ms
