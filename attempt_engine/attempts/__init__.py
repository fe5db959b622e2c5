"""
Timed attempt components: session model, durable store, clock, API client,
submission reconciler, exit triggers and the controller that ties them
together.
"""

from attempt_engine.attempts.clock import IntervalTicker, Ticker, WallClock
from attempt_engine.attempts.controller import AttemptController, AttemptState
from attempt_engine.attempts.models import AttemptSession, Grouped, Scalar
from attempt_engine.attempts.reconciler import (
    OutcomeStatus,
    RetakePolicy,
    SubmissionOutcome,
    SubmissionReconciler,
    SubmissionResult,
    SubmitTrigger,
)
from attempt_engine.attempts.store import DurableAttemptStore
from attempt_engine.attempts.triggers import ExitTriggerMultiplexer

__all__ = [
    'AttemptController',
    'AttemptState',
    'AttemptSession',
    'DurableAttemptStore',
    'ExitTriggerMultiplexer',
    'Grouped',
    'IntervalTicker',
    'OutcomeStatus',
    'RetakePolicy',
    'Scalar',
    'SubmissionOutcome',
    'SubmissionReconciler',
    'SubmissionResult',
    'SubmitTrigger',
    'Ticker',
    'WallClock',
]
