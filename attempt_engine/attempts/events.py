"""
Attempt Events

Domain events the attempt controller publishes for the UI surface, and the
page signals it listens to.
"""

from typing import Any, Dict, Optional

from attempt_engine.common.events import DomainEvent

#------------------------------------------------------------------------------
# Page signals
#------------------------------------------------------------------------------

VISIBILITY_HIDDEN = "visibility_hidden"
BACK_NAVIGATION = "back_navigation"
BEFORE_UNLOAD = "before_unload"
EXIT_REQUESTED = "exit_requested"

PAGE_SIGNALS = (VISIBILITY_HIDDEN, BACK_NAVIGATION, BEFORE_UNLOAD, EXIT_REQUESTED)


class PageSignal(DomainEvent):
    """
    A signal from the page hosting the attempt.

    Unlike controller events, a page signal's ``event_type`` is the signal
    name, so handlers subscribe to e.g. ``"visibility_hidden"``. A
    ``before_unload`` handler writes the warning prompt to ``prompt``.
    """

    def __init__(self, name: str, event_id=None, timestamp=None):
        super().__init__(event_id, timestamp)
        self.event_type = name
        self.prompt: Optional[str] = None


#------------------------------------------------------------------------------
# Controller events
#------------------------------------------------------------------------------

class AttemptEvent(DomainEvent):
    """Base class for events about one attempt"""

    def __init__(self, session_key: str, assessment_id: int, event_id=None, timestamp=None):
        super().__init__(event_id, timestamp)
        self.session_key = session_key
        self.assessment_id = assessment_id


class AttemptStarted(AttemptEvent):
    """Raised when an attempt becomes active, fresh or resumed"""

    def __init__(self, session_key, assessment_id, resumed: bool, remaining_seconds: int,
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.resumed = resumed
        self.remaining_seconds = remaining_seconds


class AnswerRecorded(AttemptEvent):
    def __init__(self, session_key, assessment_id, question_id: int, cleared: bool,
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.question_id = question_id
        self.cleared = cleared


class PositionChanged(AttemptEvent):
    def __init__(self, session_key, assessment_id, position_index: int,
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.position_index = position_index


class TimerTicked(AttemptEvent):
    def __init__(self, session_key, assessment_id, remaining_seconds: int,
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.remaining_seconds = remaining_seconds


class SubmissionStarted(AttemptEvent):
    """Raised when a submission is dispatched"""

    def __init__(self, session_key, assessment_id, trigger: str,
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.trigger = trigger


class AttemptTerminated(AttemptEvent):
    """Raised once when the attempt reaches its terminal state"""

    def __init__(self, session_key, assessment_id, outcome: Dict[str, Any],
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.outcome = outcome


class SubmissionFailed(AttemptEvent):
    """Raised when a submission failed and may be retried"""

    def __init__(self, session_key, assessment_id, error: Dict[str, Any],
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.error = error


class DefinitionLoadFailed(DomainEvent):
    def __init__(self, assessment_id: int, error: Dict[str, Any], event_id=None, timestamp=None):
        super().__init__(event_id, timestamp)
        self.assessment_id = assessment_id
        self.error = error


class PersistenceDegraded(AttemptEvent):
    """Raised once per attempt when the durable store stops accepting writes"""

    def __init__(self, session_key, assessment_id, error: Dict[str, Any],
                 event_id=None, timestamp=None):
        super().__init__(session_key, assessment_id, event_id, timestamp)
        self.error = error
