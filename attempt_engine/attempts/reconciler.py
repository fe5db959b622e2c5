"""
Submission Reconciler

Turns a finished attempt into a submission request and maps the server's
answer back into a ``SubmissionOutcome`` for the UI.

The durable record is deleted before the request goes out, so whatever
happens next no second submission can be built from it. A transient
failure writes the record back so the attempt can be retried or resumed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from attempt_engine.attempts.models import AttemptSession, time_spent_seconds
from attempt_engine.attempts.schemas import AssessmentDefinition, SubmissionHistory, SubmissionResponse
from attempt_engine.attempts.store import DurableAttemptStore
from attempt_engine.common.error_handling import (
    AlreadySubmittedError,
    ApiError,
    AssessmentExpiredError,
    AttemptError,
    StorageError,
    SubmissionTransientError,
    error_payload,
    log_error,
)
from attempt_engine.common.logger import app_logger
from attempt_engine.config import DEFAULT_ALREADY_SUBMITTED_MARKERS, DEFAULT_EXPIRED_MARKERS

logger = app_logger.getChild("attempts.reconciler")


class SubmitTrigger(str, Enum):
    """Why an attempt is being submitted"""
    MANUAL = "manual"
    TIMEOUT = "timeout"
    ABANDON = "abandon"


class OutcomeStatus(str, Enum):
    """How a submission ended"""
    SUBMITTED = "submitted"
    ALREADY_SUBMITTED = "already_submitted"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class RetakePolicy:
    """What the server allows after this submission"""
    can_retake: bool = False
    remaining_attempts: int = 0
    best_score: Optional[float] = None

    @property
    def allows_retake(self) -> bool:
        return self.can_retake and self.remaining_attempts > 0


@dataclass
class SubmissionResult:
    """Score of a submitted attempt"""
    score: float
    total_points: float
    passed: bool
    attempt_number: Optional[int] = None
    retake_policy: RetakePolicy = field(default_factory=RetakePolicy)


@dataclass
class SubmissionOutcome:
    """
    Result of one reconciliation.

    Attributes:
        status: How the submission ended
        trigger: What caused the submission
        answers: The answer list that was sent
        time_spent_seconds: Time reported to the server
        result: Score and retake policy, when known
        error: Error to surface, if any
    """
    status: OutcomeStatus
    trigger: SubmitTrigger
    answers: List[Dict[str, Any]] = field(default_factory=list)
    time_spent_seconds: int = 0
    result: Optional[SubmissionResult] = None
    error: Optional[AttemptError] = None

    @property
    def terminal(self) -> bool:
        """Whether the attempt is over (no retry possible or needed)"""
        return self.status != OutcomeStatus.FAILED

    @property
    def retryable(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @property
    def shows_error(self) -> bool:
        """Whether the UI should show an error banner"""
        return self.status in (OutcomeStatus.EXPIRED, OutcomeStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "trigger": self.trigger.value,
            "timeSpentSeconds": self.time_spent_seconds,
            "answerCount": len(self.answers),
            "result": None,
            "error": error_payload(self.error) if self.error is not None else None,
        }
        if self.result is not None:
            policy = self.result.retake_policy
            data["result"] = {
                "score": self.result.score,
                "totalPoints": self.result.total_points,
                "passed": self.result.passed,
                "attemptNumber": self.result.attempt_number,
                "retakePolicy": {
                    "canRetake": policy.can_retake,
                    "remainingAttempts": policy.remaining_attempts,
                    "bestScore": policy.best_score,
                },
            }
        return data


@dataclass
class PreparedSubmission:
    """A submission whose record is already deleted, ready to send"""
    session: AttemptSession
    definition: AssessmentDefinition
    trigger: SubmitTrigger
    answers: List[Dict[str, Any]]
    time_spent_seconds: int


def _matches(message: str, markers: Sequence[str]) -> bool:
    text = (message or "").lower()
    return any(marker.lower() in text for marker in markers)


class SubmissionReconciler:
    """
    The only component that sends submissions.

    Error classification:
    - 4xx whose message carries an already-submitted marker: success equivalent
    - 4xx whose message carries an expired marker: terminal error
    - anything else: transient, the record is restored
    """

    def __init__(
        self,
        client,
        store: DurableAttemptStore,
        clock,
        pass_ratio: float = 0.7,
        default_max_attempts: int = 1,
        submit_timeout_seconds: Optional[float] = None,
        already_submitted_markers: Optional[Sequence[str]] = None,
        expired_markers: Optional[Sequence[str]] = None
    ):
        """
        Initialize the reconciler.

        Args:
            client: Assessment API client
            store: Durable attempt store
            clock: Object with ``now_ms()``
            pass_ratio: Score ratio at or above which an attempt passes
            default_max_attempts: Retake limit used when the definition has none
            submit_timeout_seconds: Optional timeout for the submit request
            already_submitted_markers: Message fragments meaning "already submitted"
            expired_markers: Message fragments meaning "assessment expired"
        """
        self.client = client
        self.store = store
        self.clock = clock
        self.pass_ratio = pass_ratio
        self.default_max_attempts = default_max_attempts
        self.submit_timeout_seconds = submit_timeout_seconds
        self.already_submitted_markers = list(already_submitted_markers or DEFAULT_ALREADY_SUBMITTED_MARKERS)
        self.expired_markers = list(expired_markers or DEFAULT_EXPIRED_MARKERS)

    @classmethod
    def from_config(cls, client, store: DurableAttemptStore, clock, config) -> "SubmissionReconciler":
        return cls(
            client=client,
            store=store,
            clock=clock,
            pass_ratio=config.attempt.pass_ratio,
            default_max_attempts=config.attempt.default_max_attempts,
            submit_timeout_seconds=config.api.submit_timeout_seconds,
            already_submitted_markers=config.api.already_submitted_markers,
            expired_markers=config.api.expired_markers,
        )

    def build_answer_payload(
        self,
        session: AttemptSession,
        definition: AssessmentDefinition,
        trigger: SubmitTrigger
    ) -> List[Dict[str, Any]]:
        """
        Build the ordered answer list for a submission.

        Args:
            session: Session being submitted
            definition: Its definition, which fixes the order
            trigger: Abandon always sends an empty list

        Returns:
            ``{"questionId", "answerPayload"}`` pairs in definition order
        """
        if SubmitTrigger(trigger) == SubmitTrigger.ABANDON:
            return []

        payload = []
        known = set()
        for question in definition.iter_questions():
            known.add(question.id)
            answer = session.answers.get(question.id)
            if answer is None or answer.is_blank():
                continue
            payload.append({"questionId": question.id, "answerPayload": answer.to_wire()})

        dropped = set(session.answers) - known
        if dropped:
            logger.warning(f"Dropping answers for questions not in assessment {definition.id}: {sorted(dropped)}")
        return payload

    def is_passed(self, score: float, total_points: float) -> bool:
        return total_points > 0 and score / total_points >= self.pass_ratio

    async def reconcile(
        self,
        session: AttemptSession,
        definition: AssessmentDefinition,
        trigger: SubmitTrigger
    ) -> SubmissionOutcome:
        """
        Submit an attempt and classify the result.

        Never raises for server or transport failures; they come back as
        the outcome's status and error.

        Args:
            session: Session being submitted
            definition: Its definition
            trigger: What caused the submission

        Returns:
            The submission outcome
        """
        return await self.dispatch(self.prepare(session, definition, trigger))

    def prepare(
        self,
        session: AttemptSession,
        definition: AssessmentDefinition,
        trigger: SubmitTrigger
    ) -> "PreparedSubmission":
        """
        Build the request and delete the durable record.

        Runs without suspending, so a caller can transition state, prepare
        and schedule ``dispatch`` in a single step.
        """
        trigger = SubmitTrigger(trigger)
        prepared = PreparedSubmission(
            session=session,
            definition=definition,
            trigger=trigger,
            answers=self.build_answer_payload(session, definition, trigger),
            time_spent_seconds=time_spent_seconds(session, self.clock.now_ms()),
        )
        self.store.remove(session.session_key)
        return prepared

    async def dispatch(self, prepared: "PreparedSubmission") -> SubmissionOutcome:
        """Send a prepared submission and classify the result."""
        session = prepared.session
        definition = prepared.definition
        trigger = prepared.trigger
        answers = prepared.answers
        spent = prepared.time_spent_seconds

        logger.info(
            f"Dispatching {trigger.value} submission for {session.session_key} "
            f"({len(answers)} answers, {spent}s)"
        )

        try:
            response = await self.client.submit(
                definition.kind,
                definition.id,
                answers,
                spent,
                timeout=self.submit_timeout_seconds,
            )
        except ApiError as e:
            return await self._handle_api_error(e, session, definition, trigger, answers, spent)
        except asyncio.CancelledError:
            # Put the record back so a reload can resume
            self._restore(session)
            raise
        except Exception as e:
            unexpected = ApiError(f"Unexpected submission failure: {e}", cause=e)
            return await self._handle_api_error(unexpected, session, definition, trigger, answers, spent)

        result = self._result_from_response(response, definition)
        logger.info(
            f"Submitted {session.session_key}: {result.score}/{result.total_points}"
            f" (passed={result.passed})"
        )
        return SubmissionOutcome(
            status=OutcomeStatus.SUBMITTED,
            trigger=trigger,
            answers=answers,
            time_spent_seconds=spent,
            result=result,
        )

    async def _handle_api_error(
        self,
        error: ApiError,
        session: AttemptSession,
        definition: AssessmentDefinition,
        trigger: SubmitTrigger,
        answers: List[Dict[str, Any]],
        spent: int
    ) -> SubmissionOutcome:
        client_error = error.status is not None and 400 <= error.status < 500

        if client_error and _matches(error.message, self.already_submitted_markers):
            logger.info(f"Assessment {definition.id} already submitted; loading existing result")
            result = await self._existing_result(definition)
            return SubmissionOutcome(
                status=OutcomeStatus.ALREADY_SUBMITTED,
                trigger=trigger,
                answers=answers,
                time_spent_seconds=spent,
                result=result,
                error=AlreadySubmittedError(definition.id, cause=error),
            )

        if client_error and _matches(error.message, self.expired_markers):
            expired = AssessmentExpiredError(definition.id, cause=error)
            log_error(expired, level=logging.WARNING, log=logger)
            return SubmissionOutcome(
                status=OutcomeStatus.EXPIRED,
                trigger=trigger,
                answers=answers,
                time_spent_seconds=spent,
                error=expired,
            )

        transient = SubmissionTransientError(
            session.session_key,
            details={"status": error.status},
            cause=error,
            context={"assessment_id": definition.id, "trigger": trigger.value},
        )
        log_error(transient, log=logger)
        self._restore(session)
        return SubmissionOutcome(
            status=OutcomeStatus.FAILED,
            trigger=trigger,
            answers=answers,
            time_spent_seconds=spent,
            error=transient,
        )

    def _restore(self, session: AttemptSession) -> None:
        try:
            self.store.save(session)
        except StorageError as e:
            log_error(e, level=logging.WARNING, log=logger)

    def _result_from_response(
        self,
        response: SubmissionResponse,
        definition: AssessmentDefinition
    ) -> SubmissionResult:
        if response.can_retake is not None:
            remaining = response.remaining_attempts or 0
            policy = RetakePolicy(
                can_retake=response.can_retake,
                remaining_attempts=remaining,
                best_score=response.best_score,
            )
        else:
            max_attempts = definition.effective_max_attempts(self.default_max_attempts)
            remaining = max(0, max_attempts - response.attempt_number) if response.attempt_number else 0
            policy = RetakePolicy(
                can_retake=remaining > 0,
                remaining_attempts=remaining,
                best_score=response.best_score,
            )

        return SubmissionResult(
            score=response.score,
            total_points=response.total_points,
            passed=self.is_passed(response.score, response.total_points),
            attempt_number=response.attempt_number,
            retake_policy=policy,
        )

    async def _existing_result(self, definition: AssessmentDefinition) -> Optional[SubmissionResult]:
        try:
            history: SubmissionHistory = await self.client.fetch_submission_history(definition.kind, definition.id)
        except (ApiError, ValueError) as e:
            log_error(e, level=logging.WARNING, log=logger,
                      context={"assessment_id": definition.id, "operation": "submission_history"})
            return None

        latest = history.latest
        if latest is None:
            return None

        score = latest.score or 0.0
        total_points = latest.total_points or 0.0
        return SubmissionResult(
            score=score,
            total_points=total_points,
            passed=self.is_passed(score, total_points),
            attempt_number=latest.attempt_number,
            retake_policy=RetakePolicy(
                can_retake=history.can_retake,
                remaining_attempts=history.remaining_attempts,
                best_score=history.max_score,
            ),
        )
