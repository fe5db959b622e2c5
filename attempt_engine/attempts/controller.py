"""
Attempt Controller

Runs one timed attempt of one user on one assessment as a state machine:

    IDLE -> RESUMING -> ACTIVE -> {AUTO_SUBMITTING, MANUAL_SUBMITTING, ABANDONING}
         -> TERMINATED | SUBMIT_FAILED

The controller is driven from a single asyncio event loop. Every state
change that leads to a submission happens in one synchronous step: the state
tag is set, the ticker is stopped and the durable record is deleted before
anything is awaited. Later calls see the new state and become no-ops, which
is what guarantees a single submission per record.

Public operations never raise. Misuse is logged and ignored; failures are
surfaced through ``last_error``, ``outcome`` and domain events.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from attempt_engine.attempts.client import AssessmentApiClient
from attempt_engine.attempts.clock import IntervalTicker, Ticker, WallClock
from attempt_engine.attempts.events import (
    AnswerRecorded,
    AttemptStarted,
    AttemptTerminated,
    DefinitionLoadFailed,
    PersistenceDegraded,
    PositionChanged,
    SubmissionFailed,
    SubmissionStarted,
    TimerTicked,
)
from attempt_engine.attempts.models import (
    AttemptSession,
    coerce_answer,
    new_session,
    resume_session,
    with_answer,
    with_position,
    with_tick,
)
from attempt_engine.attempts.reconciler import SubmissionOutcome, SubmissionReconciler, SubmitTrigger
from attempt_engine.attempts.schemas import AssessmentDefinition, AssessmentKind
from attempt_engine.attempts.store import DurableAttemptStore
from attempt_engine.attempts.triggers import ConfirmCallable, ExitTriggerMultiplexer
from attempt_engine.common.error_handling import (
    ApiError,
    AttemptError,
    DefinitionLoadError,
    DefinitionValidationError,
    StorageError,
    error_payload,
    log_error,
)
from attempt_engine.common.events import EventDispatcher
from attempt_engine.common.logger import LoggerAdapter, app_logger
from attempt_engine.common.storage import create_backend
from attempt_engine.common.storage.key_builder import KeyBuilder
from attempt_engine.config import AppConfig, get_config

logger = app_logger.getChild("attempts.controller")


class AttemptState(str, Enum):
    """States of an attempt controller"""
    IDLE = "idle"
    RESUMING = "resuming"
    ACTIVE = "active"
    AUTO_SUBMITTING = "auto_submitting"
    MANUAL_SUBMITTING = "manual_submitting"
    ABANDONING = "abandoning"
    SUBMIT_FAILED = "submit_failed"
    TERMINATED = "terminated"


SUBMITTING_STATES = {
    SubmitTrigger.TIMEOUT: AttemptState.AUTO_SUBMITTING,
    SubmitTrigger.MANUAL: AttemptState.MANUAL_SUBMITTING,
    SubmitTrigger.ABANDON: AttemptState.ABANDONING,
}


class AttemptController:
    """
    Controller for one timed, resumable attempt.

    Collaborators are injectable so the controller can run without a real
    clock, network or page:

    Args:
        assessment_id: ID of the assessment to attempt
        user_id: ID of the user taking it
        kind: Assessment kind, selecting API paths and storage namespace
        client: Assessment API client
        store: Durable attempt store
        reconciler: Submission reconciler (built from ``client`` and ``store``
            when omitted)
        clock: Wall clock with ``now_ms()``
        ticker: Periodic ticker driving ``tick``
        events: Dispatcher receiving the controller's domain events
        page_events: Dispatcher carrying page signals
        confirm: Blocking confirmation prompt used for explicit exit
        definition: Already-loaded definition, skipping the fetch
        config: Application configuration (process configuration by default)
    """

    def __init__(
        self,
        assessment_id: int,
        user_id: Union[int, str],
        kind: Union[AssessmentKind, str] = AssessmentKind.QUIZ,
        client: Optional[AssessmentApiClient] = None,
        store: Optional[DurableAttemptStore] = None,
        reconciler: Optional[SubmissionReconciler] = None,
        clock: Any = None,
        ticker: Optional[Ticker] = None,
        events: Optional[EventDispatcher] = None,
        page_events: Optional[EventDispatcher] = None,
        confirm: Optional[ConfirmCallable] = None,
        definition: Optional[AssessmentDefinition] = None,
        config: Optional[AppConfig] = None
    ):
        self.config = config or get_config()
        self.assessment_id = assessment_id
        self.user_id = user_id
        self.kind = AssessmentKind(kind)
        self.session_key = KeyBuilder.attempt_key(self.kind.value, user_id, assessment_id)

        self.clock = clock or WallClock()
        self.client = client or AssessmentApiClient.from_config(self.config.api)
        self.store = store or DurableAttemptStore(
            backend=create_backend(self.config.storage),
            staleness_window_ms=self.config.storage.staleness_window_ms,
            clock=self.clock,
        )
        self.reconciler = reconciler or SubmissionReconciler.from_config(
            self.client, self.store, self.clock, self.config
        )
        self.ticker = ticker or IntervalTicker(self.config.clock.tick_interval_seconds)
        self.events = events if events is not None else EventDispatcher()
        self.triggers = ExitTriggerMultiplexer(
            page_events=page_events,
            confirm=confirm,
            flush_on_unload=self.config.attempt.flush_on_unload,
            unload_warning=self.config.attempt.unload_warning,
        )
        self._confirm = confirm

        self._state = AttemptState.IDLE
        self._definition = definition
        self._session: Optional[AttemptSession] = None
        self._trigger: Optional[SubmitTrigger] = None
        self._submission: Optional[asyncio.Task] = None
        self._outcome: Optional[SubmissionOutcome] = None
        self._last_error: Optional[AttemptError] = None
        self._starting = False
        self._closed = False
        self._persistence_degraded = False
        self._resumed = False

        self.log = LoggerAdapter(logger, {
            "session_key": self.session_key,
            "assessment_id": assessment_id,
            "kind": self.kind.value,
        })

    #--------------------------------------------------------------------------
    # Read-only views
    #--------------------------------------------------------------------------

    @property
    def state(self) -> AttemptState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == AttemptState.ACTIVE and not self._closed

    @property
    def session(self) -> Optional[AttemptSession]:
        return self._session

    @property
    def definition(self) -> Optional[AssessmentDefinition]:
        return self._definition

    @property
    def outcome(self) -> Optional[SubmissionOutcome]:
        return self._outcome

    @property
    def last_error(self) -> Optional[AttemptError]:
        return self._last_error

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    @property
    def submission(self) -> Optional[asyncio.Task]:
        """Task of the submission in flight or last sent, if any"""
        return self._submission

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the attempt for the UI"""
        session = self._session
        view = {
            "state": self._state.value,
            "sessionKey": self.session_key,
            "assessmentId": self.assessment_id,
            "kind": self.kind.value,
            "resumed": self._resumed,
            "remainingSeconds": session.remaining_seconds if session else None,
            "positionIndex": session.position_index if session else 0,
            "sectionCount": self._definition.section_count if self._definition else 0,
            "answers": {qid: a.to_wire() for qid, a in session.answers.items()} if session else {},
            "answeredCount": session.answered_count if session else 0,
            "persistenceDegraded": self._persistence_degraded,
            "error": error_payload(self._last_error) if self._last_error else None,
            "outcome": self._outcome.to_dict() if self._outcome else None,
            "canRetake": self.can_retake,
        }
        return view

    @property
    def can_retake(self) -> bool:
        if self._state != AttemptState.TERMINATED or self._outcome is None:
            return False
        result = self._outcome.result
        return result is not None and result.retake_policy.allows_retake

    #--------------------------------------------------------------------------
    # Lifecycle
    #--------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Enter the attempt: resume a fresh durable record or begin a new one.

        May be called again while RESUMING after a failed definition fetch.

        Returns:
            True if the attempt became active
        """
        if self._closed or self._starting or self._state not in (AttemptState.IDLE, AttemptState.RESUMING):
            self.log.debug(f"start() ignored in state {self._state.value}")
            return False

        self._set_state(AttemptState.RESUMING)
        self._starting = True
        self._last_error = None
        try:
            definition = await self._load_definition()
        finally:
            self._starting = False

        if definition is None or self._closed:
            return False
        self._definition = definition

        now = self.clock.now_ms()
        stored = self.store.load(self.session_key, definition)
        if stored is not None:
            session = resume_session(stored, now)
            self._resumed = True
            self.log.info(
                f"Resuming attempt: {stored.remaining_seconds}s stored, "
                f"{session.remaining_seconds}s after correction"
            )
        else:
            session = new_session(
                definition, self.user_id, now,
                default_time_limit_minutes=self.config.attempt.default_time_limit_minutes,
            )
            self._resumed = False
            self.log.info(f"Starting fresh attempt with {session.remaining_seconds}s")

        self._session = session
        self._persist()
        self._set_state(AttemptState.ACTIVE)
        self.triggers.attach(self)
        self.events.dispatch(AttemptStarted(
            self.session_key, self.assessment_id, self._resumed, session.remaining_seconds
        ))

        if session.remaining_seconds <= 0:
            self.log.info("Resumed attempt has no time left")
            self._begin_submission(SubmitTrigger.TIMEOUT)
        else:
            self.ticker.start(self.tick)
        return True

    async def _load_definition(self) -> Optional[AssessmentDefinition]:
        definition = self._definition
        error: Optional[AttemptError] = None
        try:
            if definition is None:
                definition = await self.client.fetch_definition(self.kind, self.assessment_id)
            definition.ensure_attemptable()
        except DefinitionValidationError as e:
            error = e
        except ApiError as e:
            error = DefinitionLoadError(self.assessment_id, cause=e)
        except ValueError as e:
            error = DefinitionValidationError(self.assessment_id, "malformed definition", cause=e)

        if error is not None:
            self._last_error = error
            log_error(error, log=logger, context={"session_key": self.session_key})
            self.events.dispatch(DefinitionLoadFailed(self.assessment_id, error_payload(error)))
            return None
        return definition

    def close(self) -> None:
        """
        Stop the ticker and detach exit triggers without submitting.

        The durable record is left in place, so the attempt can be resumed
        by a later controller.
        """
        if self._closed:
            return
        self._closed = True
        self.ticker.stop()
        self.triggers.detach()
        self.log.info(f"Controller closed in state {self._state.value}")

    def spawn_retake(self) -> Optional["AttemptController"]:
        """
        Create a controller for a new attempt on the same assessment.

        Returns:
            A new, idle controller when the retake policy allows another
            attempt, otherwise None
        """
        if not self.can_retake:
            self.log.debug("Retake not allowed")
            return None
        return AttemptController(
            assessment_id=self.assessment_id,
            user_id=self.user_id,
            kind=self.kind,
            client=self.client,
            store=self.store,
            reconciler=self.reconciler,
            clock=self.clock,
            ticker=self.ticker,
            events=self.events,
            page_events=self.triggers.page_events,
            confirm=self._confirm,
            config=self.config,
        )

    #--------------------------------------------------------------------------
    # Mutations
    #--------------------------------------------------------------------------

    def record_answer(self, question_id: int, value: Any) -> bool:
        """
        Record the answer to one question, replacing any earlier answer.

        A blank value clears the answer.

        Returns:
            True if the answer was applied
        """
        if not self._check_active("record_answer"):
            return False

        question = self._definition.question_index().get(question_id)
        if question is None:
            self.log.warning(f"Ignoring answer for unknown question {question_id}")
            return False

        if value is None:
            answer = None
        else:
            try:
                answer = coerce_answer(question, value)
            except ValueError as e:
                self.log.warning(f"Ignoring answer for question {question_id}: {e}")
                return False

        self._session = with_answer(self._session, question_id, answer)
        self._persist()
        cleared = question_id not in self._session.answers
        self.events.dispatch(AnswerRecorded(self.session_key, self.assessment_id, question_id, cleared))
        return True

    def advance_position(self, delta: int) -> bool:
        """Move the current section by ``delta``, clamped to the section range"""
        if not self._check_active("advance_position"):
            return False
        return self._move_to(self._session.position_index + delta)

    def go_to_position(self, index: int) -> bool:
        """Move to section ``index``, clamped to the section range"""
        if not self._check_active("go_to_position"):
            return False
        return self._move_to(index)

    def _move_to(self, index: int) -> bool:
        before = self._session.position_index
        self._session = with_position(self._session, index, self._definition.section_count)
        if self._session.position_index == before:
            return False
        self._persist()
        self.events.dispatch(PositionChanged(self.session_key, self.assessment_id, self._session.position_index))
        return True

    def tick(self) -> None:
        """
        Advance the countdown by one second.

        On reaching zero the attempt moves to AUTO_SUBMITTING and the
        timeout submission is dispatched in the same step.
        """
        if not self.is_active:
            self.log.debug(f"tick() ignored in state {self._state.value}")
            return

        self._session = with_tick(self._session)
        self._persist()
        self.events.dispatch(TimerTicked(self.session_key, self.assessment_id, self._session.remaining_seconds))

        if self._session.remaining_seconds == 0:
            self.log.info("Time is up")
            self._begin_submission(SubmitTrigger.TIMEOUT)

    def request_submit(self, trigger: Union[SubmitTrigger, str, bool] = SubmitTrigger.MANUAL) -> Optional[asyncio.Task]:
        """
        Single entrypoint for ending the attempt.

        Args:
            trigger: ``manual``, ``timeout`` or ``abandon``; a bool selects
                manual (True) or timeout (False)

        Returns:
            Task resolving to the SubmissionOutcome, or None when the
            controller is not ACTIVE
        """
        if isinstance(trigger, bool):
            trigger = SubmitTrigger.MANUAL if trigger else SubmitTrigger.TIMEOUT
        try:
            trigger = SubmitTrigger(trigger)
        except ValueError:
            self.log.warning(f"Ignoring submit request with unknown trigger {trigger!r}")
            return None

        if not self._check_active("request_submit"):
            return None
        return self._begin_submission(trigger)

    async def finish(self) -> Optional[SubmissionOutcome]:
        """Submit manually and wait for the outcome"""
        task = self.request_submit(SubmitTrigger.MANUAL)
        return await task if task is not None else None

    async def request_exit(self) -> bool:
        """Explicit exit: confirm with the user, then abandon"""
        return await self.triggers.request_exit()

    def before_unload(self) -> Optional[str]:
        """Page unload: returns the warning prompt while the attempt is active"""
        return self.triggers.before_unload()

    def retry_submit(self) -> Optional[asyncio.Task]:
        """
        Send the failed submission again with its original trigger.

        Returns:
            Task resolving to the SubmissionOutcome, or None when there is no
            failed submission to retry
        """
        if self._closed or self._state != AttemptState.SUBMIT_FAILED:
            self.log.debug(f"retry_submit() ignored in state {self._state.value}")
            return None
        self.log.info(f"Retrying {self._trigger.value} submission")
        return self._begin_submission(self._trigger)

    #--------------------------------------------------------------------------
    # Internals
    #--------------------------------------------------------------------------

    def _check_active(self, operation: str) -> bool:
        if self.is_active:
            return True
        self.log.debug(f"{operation}() ignored in state {self._state.value}")
        return False

    def _set_state(self, state: AttemptState) -> None:
        if state != self._state:
            self.log.info(f"{self._state.value} -> {state.value}")
            self._state = state

    def _persist(self) -> None:
        try:
            self._session = self.store.save(self._session)
        except StorageError as e:
            if self._persistence_degraded:
                self.log.debug(f"Attempt record still not writable: {e.message}")
                return
            self._persistence_degraded = True
            log_error(e, level=logging.WARNING, log=logger, context={"session_key": self.session_key})
            self.events.dispatch(PersistenceDegraded(self.session_key, self.assessment_id, error_payload(e)))

    def _begin_submission(self, trigger: SubmitTrigger) -> asyncio.Task:
        self._set_state(SUBMITTING_STATES[trigger])
        self._trigger = trigger
        self._last_error = None
        self.ticker.stop()

        prepared = self.reconciler.prepare(self._session, self._definition, trigger)
        self.log.with_context(trigger=trigger.value).info(
            f"Submitting {len(prepared.answers)} answers after {prepared.time_spent_seconds}s"
        )
        self.events.dispatch(SubmissionStarted(self.session_key, self.assessment_id, trigger.value))
        self._submission = asyncio.ensure_future(self._complete_submission(prepared))
        return self._submission

    async def _complete_submission(self, prepared) -> SubmissionOutcome:
        outcome = await self.reconciler.dispatch(prepared)
        self._outcome = outcome

        if outcome.terminal:
            if outcome.shows_error:
                self._last_error = outcome.error
            self._set_state(AttemptState.TERMINATED)
            self.triggers.detach()
            self.events.dispatch(AttemptTerminated(self.session_key, self.assessment_id, outcome.to_dict()))
        else:
            self._last_error = outcome.error
            self._set_state(AttemptState.SUBMIT_FAILED)
            self.events.dispatch(SubmissionFailed(self.session_key, self.assessment_id, error_payload(outcome.error)))
        return outcome
