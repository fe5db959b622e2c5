import asyncio

import pytest

from attempt_engine.attempts.models import Grouped, Scalar, new_session, with_answer
from attempt_engine.attempts.reconciler import OutcomeStatus, SubmissionReconciler, SubmitTrigger
from attempt_engine.attempts.schemas import SubmissionHistory, SubmissionRecord, SubmissionResponse
from attempt_engine.common.error_handling import (
    AlreadySubmittedError,
    ApiError,
    AssessmentExpiredError,
    SubmissionTransientError,
)

from conftest import START_MS


@pytest.fixture
def reconciler(api_client, store, clock):
    return SubmissionReconciler(api_client, store, clock)


@pytest.fixture
def answered(quiz_definition, store):
    session = new_session(quiz_definition, 5, START_MS)
    for qid in (105, 101, 103):
        session = with_answer(session, qid, Scalar(f"answer-{qid}"))
    return store.save(session)


def test_payload_follows_definition_order(reconciler, answered, quiz_definition):
    payload = reconciler.build_answer_payload(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert [item["questionId"] for item in payload] == [101, 103, 105]
    assert payload[0] == {"questionId": 101, "answerPayload": "answer-101"}


def test_abandon_payload_is_empty(reconciler, answered, quiz_definition):
    assert reconciler.build_answer_payload(answered, quiz_definition, SubmitTrigger.ABANDON) == []


def test_grouped_payload_is_json_encoded(reconciler, skill_test_definition):
    session = new_session(skill_test_definition, 5, START_MS)
    session = with_answer(session, 2, Grouped.from_mapping({"0": "iii", "1": "i"}))
    payload = reconciler.build_answer_payload(session, skill_test_definition, SubmitTrigger.TIMEOUT)
    assert payload == [{"questionId": 2, "answerPayload": '{"0": "iii", "1": "i"}'}]


def test_answers_for_unknown_questions_are_dropped(reconciler, quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    session = with_answer(session, 101, Scalar("A"))
    session = with_answer(session, 999, Scalar("Z"))
    payload = reconciler.build_answer_payload(session, quiz_definition, SubmitTrigger.MANUAL)
    assert [item["questionId"] for item in payload] == [101]


@pytest.mark.asyncio
async def test_record_is_removed_before_dispatch(reconciler, answered, quiz_definition, store, api_client):
    seen = {}

    async def submit(*args, **kwargs):
        seen["exists_during_submit"] = store.exists(answered.session_key)
        return SubmissionResponse(score=1, total_points=10)

    api_client.submit.side_effect = submit
    await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert seen["exists_during_submit"] is False


def test_prepare_removes_record_without_awaiting(reconciler, answered, quiz_definition, store, api_client):
    prepared = reconciler.prepare(answered, quiz_definition, SubmitTrigger.TIMEOUT)
    assert not store.exists(answered.session_key)
    assert len(prepared.answers) == 3
    api_client.submit.assert_not_called()


@pytest.mark.asyncio
async def test_success(reconciler, answered, quiz_definition, api_client, clock, store):
    clock.advance(125.7)
    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)

    assert outcome.status == OutcomeStatus.SUBMITTED
    assert outcome.terminal and not outcome.shows_error
    assert outcome.time_spent_seconds == 125
    assert outcome.result.score == 8
    assert outcome.result.passed is True
    assert outcome.result.retake_policy.allows_retake
    assert not store.exists(answered.session_key)

    kind, assessment_id, answers, spent = api_client.submit.await_args.args
    assert assessment_id == 42
    assert len(answers) == 3
    assert spent == 125
    assert api_client.submit.await_args.kwargs["timeout"] is None


@pytest.mark.asyncio
async def test_pass_ratio(reconciler, answered, quiz_definition, api_client):
    api_client.submit.return_value = SubmissionResponse(score=6.9, total_points=10)
    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert outcome.result.passed is False

    assert reconciler.is_passed(7, 10)
    assert not reconciler.is_passed(0, 0)


@pytest.mark.asyncio
async def test_retake_policy_derived_from_attempt_number(reconciler, answered, quiz_definition, api_client):
    # Bare submission record without retake fields; quiz allows 2 attempts
    api_client.submit.return_value = SubmissionResponse(score=5, total_points=10, attempt_number=1)
    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    policy = outcome.result.retake_policy
    assert policy.can_retake and policy.remaining_attempts == 1

    api_client.submit.return_value = SubmissionResponse(score=5, total_points=10, attempt_number=2)
    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert not outcome.result.retake_policy.allows_retake


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [
    "Quiz already submitted",
    "Bạn đã hết lượt làm bài. Số lần làm bài tối đa là 1.",
    "Bạn đã nộp bài này rồi",
])
async def test_already_submitted_shows_existing_result(reconciler, answered, quiz_definition, api_client,
                                                      store, message):
    api_client.submit.side_effect = ApiError(message, status=400)
    api_client.fetch_submission_history.return_value = SubmissionHistory(
        submissions=[SubmissionRecord(score=9, total_points=10, attempt_number=1)],
        can_retake=False,
        remaining_attempts=0,
        max_score=9,
    )

    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)

    assert outcome.status == OutcomeStatus.ALREADY_SUBMITTED
    assert outcome.terminal and not outcome.shows_error
    assert isinstance(outcome.error, AlreadySubmittedError)
    assert outcome.result.score == 9
    assert outcome.result.passed is True
    assert not store.exists(answered.session_key)


@pytest.mark.asyncio
async def test_already_submitted_without_history(reconciler, answered, quiz_definition, api_client, store):
    api_client.submit.side_effect = ApiError("already submitted", status=400)
    api_client.fetch_submission_history.side_effect = ApiError("boom", status=500)

    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)

    assert outcome.status == OutcomeStatus.ALREADY_SUBMITTED
    assert outcome.result is None
    assert not outcome.shows_error
    assert not store.exists(answered.session_key)


@pytest.mark.asyncio
@pytest.mark.parametrize("message", ["Quiz đã hết hạn", "Assessment expired", "Quiz không còn hoạt động"])
async def test_expired_is_terminal(reconciler, answered, quiz_definition, api_client, store, message):
    api_client.submit.side_effect = ApiError(message, status=400)

    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.TIMEOUT)

    assert outcome.status == OutcomeStatus.EXPIRED
    assert outcome.terminal and outcome.shows_error and not outcome.retryable
    assert isinstance(outcome.error, AssessmentExpiredError)
    assert not store.exists(answered.session_key)
    api_client.fetch_submission_history.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    ApiError("Internal server error", status=500),
    ApiError("Connection error: refused", status=None),
    ApiError("Not found", status=404),
    # Markers only count on client errors
    ApiError("upstream expired", status=502),
])
async def test_transient_failure_restores_record(reconciler, answered, quiz_definition, api_client, store, error):
    api_client.submit.side_effect = error

    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.retryable and not outcome.terminal
    assert isinstance(outcome.error, SubmissionTransientError)
    assert outcome.error.retryable
    assert store.exists(answered.session_key)


@pytest.mark.asyncio
async def test_unexpected_exception_is_transient(reconciler, answered, quiz_definition, api_client, store):
    api_client.submit.side_effect = RuntimeError("bad response")
    outcome = await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert outcome.status == OutcomeStatus.FAILED
    assert store.exists(answered.session_key)


@pytest.mark.asyncio
async def test_cancelled_submission_restores_record(reconciler, answered, quiz_definition, api_client, store):
    api_client.submit.side_effect = asyncio.CancelledError()
    with pytest.raises(asyncio.CancelledError):
        await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert store.exists(answered.session_key)


@pytest.mark.asyncio
async def test_submit_timeout_is_passed_to_client(api_client, store, clock, answered, quiz_definition):
    reconciler = SubmissionReconciler(api_client, store, clock, submit_timeout_seconds=12.5)
    await reconciler.reconcile(answered, quiz_definition, SubmitTrigger.MANUAL)
    assert api_client.submit.await_args.kwargs["timeout"] == 12.5


def test_from_config(api_client, store, clock, config):
    config.attempt.pass_ratio = 0.5
    config.api.expired_markers = ["closed"]
    reconciler = SubmissionReconciler.from_config(api_client, store, clock, config)
    assert reconciler.pass_ratio == 0.5
    assert reconciler.expired_markers == ["closed"]


def test_outcome_to_dict(reconciler):
    from attempt_engine.attempts.reconciler import SubmissionOutcome
    outcome = SubmissionOutcome(
        status=OutcomeStatus.EXPIRED,
        trigger=SubmitTrigger.TIMEOUT,
        error=AssessmentExpiredError(42),
    )
    data = outcome.to_dict()
    assert data["status"] == "expired"
    assert data["error"]["code"] == "assessment_expired"
    assert data["error"]["retryable"] is False
    assert data["result"] is None
