"""
Attempt Engine

Controller for timed, resumable assessment attempts (quizzes and
multi-section skill tests).

The engine provides:
1. A countdown that survives reloads through a durable attempt record
2. At most one submission per attempt, whichever exit trigger fires first
3. Automatic termination on timeout, tab hidden, back navigation and
   confirmed exit, with a best-effort warning on unload
4. Reconciliation of the submission with a server that enforces retake limits
"""

__version__ = "0.1.0"

from attempt_engine.attempts.controller import AttemptController, AttemptState
from attempt_engine.attempts.reconciler import OutcomeStatus, SubmissionOutcome, SubmitTrigger
from attempt_engine.attempts.schemas import AssessmentDefinition, AssessmentKind

__all__ = [
    'AttemptController',
    'AttemptState',
    'AssessmentDefinition',
    'AssessmentKind',
    'OutcomeStatus',
    'SubmissionOutcome',
    'SubmitTrigger',
]
