"""
Shared fixtures for the attempt engine tests: a controllable clock and
ticker, a mocked API client and sample assessment definitions.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from attempt_engine.attempts.clock import Ticker
from attempt_engine.attempts.controller import AttemptController
from attempt_engine.attempts.schemas import (
    AssessmentDefinition,
    AssessmentKind,
    SubmissionHistory,
    SubmissionResponse,
)
from attempt_engine.attempts.store import DurableAttemptStore
from attempt_engine.common.events import EventDispatcher
from attempt_engine.common.storage import MemoryStoreBackend
from attempt_engine.config import AppConfig

START_MS = 1_700_000_000_000


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, now_ms: int = START_MS):
        self.now = now_ms

    def now_ms(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeTicker(Ticker):
    """Ticker fired by hand from the test"""

    def __init__(self, clock: FakeClock = None):
        self.clock = clock
        self.callback = None
        self._running = False
        self.starts = 0
        self.stops = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self, callback) -> None:
        self.callback = callback
        self._running = True
        self.starts += 1

    def stop(self) -> None:
        self._running = False
        self.stops += 1

    def fire(self, times: int = 1) -> int:
        """Emit up to ``times`` ticks, advancing the clock one second each"""
        fired = 0
        for _ in range(times):
            if not self._running:
                break
            if self.clock is not None:
                self.clock.advance(1)
            self.callback()
            fired += 1
        return fired


def quiz_payload(question_count: int = 10, time_limit: int = 10, max_attempts: int = 2):
    return {
        "id": 42,
        "title": "Sample quiz",
        "status": "ACTIVE",
        "timeLimit": time_limit,
        "maxAttempts": max_attempts,
        "questions": [
            {"id": 100 + i, "question": f"Question {i}", "type": "MULTIPLE_CHOICE",
             "options": ["A", "B", "C"], "points": 1, "order": i}
            for i in range(1, question_count + 1)
        ],
    }


def skill_test_payload():
    return {
        "id": 7,
        "title": "Reading test",
        "timeLimit": 60,
        "sections": [
            {
                "id": 1,
                "title": "Passage 1",
                "questionGroups": [
                    {"id": 11, "questions": [
                        {"id": 1, "question": "Choose", "type": "MULTIPLE_CHOICE"},
                        {"id": 2, "question": "Match headings", "type": "MATCHING",
                         "subQuestions": ["Paragraph A", "Paragraph B", "Paragraph C"]},
                    ]},
                ],
            },
            {
                "id": 2,
                "title": "Passage 2",
                "questionGroups": [
                    {"id": 21, "questions": [
                        {"id": 3, "question": "True/False/Not given",
                         "type": "IDENTIFYING_INFORMATION", "subQuestions": ["S1", "S2"]},
                    ]},
                ],
            },
            {
                "id": 3,
                "title": "Passage 3",
                "questions": [
                    {"id": 4, "question": "Complete the summary", "type": "FILL_BLANK",
                     "subQuestions": None},
                ],
            },
        ],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticker(clock):
    return FakeTicker(clock)


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def backend():
    return MemoryStoreBackend()


@pytest.fixture
def store(backend, clock):
    return DurableAttemptStore(backend=backend, clock=clock)


@pytest.fixture
def quiz_definition():
    return AssessmentDefinition.from_payload(quiz_payload(), AssessmentKind.QUIZ)


@pytest.fixture
def skill_test_definition():
    return AssessmentDefinition.from_payload(skill_test_payload(), AssessmentKind.SKILL_TEST)


@pytest.fixture
def api_client(quiz_definition):
    client = MagicMock()
    client.fetch_definition = AsyncMock(return_value=quiz_definition)
    client.submit = AsyncMock(return_value=SubmissionResponse(
        score=8, total_points=10, attempt_number=1,
        can_retake=True, remaining_attempts=1, best_score=8,
    ))
    client.fetch_submission_history = AsyncMock(return_value=SubmissionHistory())
    return client


@pytest.fixture
def page_events():
    return EventDispatcher()


@pytest.fixture
def make_controller(api_client, store, clock, ticker, page_events, config):
    def factory(**overrides):
        kwargs = dict(
            assessment_id=42,
            user_id=5,
            kind=AssessmentKind.QUIZ,
            client=api_client,
            store=store,
            clock=clock,
            ticker=ticker,
            page_events=page_events,
            config=config,
        )
        kwargs.update(overrides)
        return AttemptController(**kwargs)
    return factory
