import json

import pytest

from attempt_engine.attempts.models import (
    AttemptSession,
    Grouped,
    Scalar,
    coerce_answer,
    decode_answer,
    is_stale,
    new_session,
    resume_session,
    time_spent_seconds,
    with_answer,
    with_position,
    with_tick,
)
from attempt_engine.attempts.schemas import AssessmentDefinition, AssessmentKind
from attempt_engine.common.error_handling import DefinitionValidationError

from conftest import START_MS, quiz_payload, skill_test_payload


# --- Definition parsing ---

def test_quiz_questions_fold_into_one_section(quiz_definition):
    assert quiz_definition.section_count == 1
    assert [q.id for q in quiz_definition.iter_questions()] == list(range(101, 111))
    assert quiz_definition.kind == AssessmentKind.QUIZ


def test_skill_test_sections_and_groups(skill_test_definition):
    assert skill_test_definition.section_count == 3
    assert [q.id for q in skill_test_definition.iter_questions()] == [1, 2, 3, 4]
    questions = skill_test_definition.question_index()
    assert questions[2].is_grouped
    assert questions[2].question_type == "MATCHING"
    assert not questions[1].is_grouped
    # null subQuestions means a simple question
    assert not questions[4].is_grouped


def test_time_limit_and_attempt_defaults():
    payload = quiz_payload()
    payload["timeLimit"] = 0
    payload.pop("maxAttempts")
    definition = AssessmentDefinition.from_payload(payload, AssessmentKind.QUIZ)
    assert definition.effective_time_limit() == 15
    assert definition.effective_time_limit(20) == 20
    assert definition.effective_max_attempts() == 1


def test_envelope_fields_are_ignored():
    payload = skill_test_payload()
    payload["createdBy"] = {"id": 1}
    definition = AssessmentDefinition.from_payload(payload, AssessmentKind.SKILL_TEST)
    assert definition.id == 7


def test_definition_without_questions_is_not_attemptable():
    definition = AssessmentDefinition.from_payload({"id": 1, "sections": [{"title": "Empty"}]},
                                                   AssessmentKind.SKILL_TEST)
    with pytest.raises(DefinitionValidationError):
        definition.ensure_attemptable()

    definition = AssessmentDefinition.from_payload({"id": 1}, AssessmentKind.QUIZ)
    with pytest.raises(DefinitionValidationError):
        definition.ensure_attemptable()


# --- Answer codec ---

def test_grouped_answer_wire_form_is_ordered_json():
    answer = Grouped.from_mapping({"0": "B", "1": " C ", "2": ""})
    assert answer.to_wire() == json.dumps({"0": "B", "1": "C"})
    assert not answer.is_blank()
    assert Grouped.from_mapping({"0": " "}).is_blank()


def test_scalar_answer():
    assert Scalar(" A ").to_wire() == "A"
    assert Scalar(3.0).to_wire() == "3"
    assert Scalar("").is_blank()


def test_decode_is_driven_by_question_metadata(skill_test_definition):
    questions = skill_test_definition.question_index()
    grouped = decode_answer(questions[2], '{"0": "iv", "1": "ii"}')
    assert isinstance(grouped, Grouped)
    assert grouped.as_dict() == {"0": "iv", "1": "ii"}

    # A simple question keeps JSON-looking text as a plain string
    scalar = decode_answer(questions[1], '{"0": "x"}')
    assert scalar == Scalar('{"0": "x"}')


def test_decode_rejects_malformed_grouped_answer(skill_test_definition):
    question = skill_test_definition.question_index()[2]
    with pytest.raises(ValueError):
        decode_answer(question, "not json")
    with pytest.raises(ValueError):
        decode_answer(question, "[1, 2]")


def test_coerce_answer(skill_test_definition):
    questions = skill_test_definition.question_index()
    assert coerce_answer(questions[1], "A") == Scalar("A")
    assert coerce_answer(questions[2], {0: "i", 1: "iii"}).as_dict() == {"0": "i", "1": "iii"}
    with pytest.raises(ValueError):
        coerce_answer(questions[1], {"0": "A"})
    with pytest.raises(ValueError):
        coerce_answer(questions[2], 5)
    with pytest.raises(ValueError):
        coerce_answer(questions[1], True)


# --- Session transitions ---

def test_new_session(quiz_definition):
    session = new_session(quiz_definition, user_id=5, now_ms=START_MS)
    assert session.session_key == "quiz-attempt:5:42"
    assert session.remaining_seconds == 600
    assert session.position_index == 0
    assert session.answers == {}
    assert session.started_at_epoch_ms == START_MS


def test_answers_are_replaced_whole_and_blank_clears(quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    session = with_answer(session, 101, Scalar("A"))
    session = with_answer(session, 101, Scalar("B"))
    assert session.answers == {101: Scalar("B")}

    session = with_answer(session, 101, Scalar("  "))
    assert session.answers == {}


def test_transitions_do_not_mutate_input(quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    updated = with_answer(session, 101, Scalar("A"))
    assert session.answers == {}
    assert updated.answers == {101: Scalar("A")}


def test_position_is_clamped(skill_test_definition):
    session = new_session(skill_test_definition, 5, START_MS)
    assert with_position(session, 5, 3).position_index == 2
    assert with_position(session, -1, 3).position_index == 0


def test_tick_floors_at_zero(quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    session = with_tick(session, 599)
    assert session.remaining_seconds == 1
    session = with_tick(with_tick(session))
    assert session.remaining_seconds == 0


def test_resume_subtracts_elapsed_time(quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    session = AttemptSession(**{**session.__dict__, "remaining_seconds": 300,
                                "last_persisted_at_epoch_ms": START_MS})
    resumed = resume_session(session, START_MS + 120_000)
    assert resumed.remaining_seconds == 180

    assert resume_session(session, START_MS + 10_000_000).remaining_seconds == 0
    # Clock going backwards never adds time
    assert resume_session(session, START_MS - 60_000).remaining_seconds == 300


def test_time_spent_and_staleness(quiz_definition):
    session = new_session(quiz_definition, 5, START_MS)
    assert time_spent_seconds(session, START_MS + 61_999) == 61

    window = 6 * 3600 * 1000
    assert not is_stale(START_MS, START_MS + window, window)
    assert is_stale(START_MS, START_MS + window + 1, window)
    assert is_stale(None, START_MS, window)


def test_snapshot_keeps_grouped_answers_in_wire_form(skill_test_definition):
    session = new_session(skill_test_definition, 5, START_MS)
    session = with_answer(session, 1, Scalar("B"))
    session = with_answer(session, 2, Grouped.from_mapping({"0": "iv", "1": "i"}))
    snapshot = session.to_snapshot()

    assert snapshot["answers"] == {"1": "B", "2": '{"0": "iv", "1": "i"}'}
    assert snapshot["assessmentId"] == 7
    assert snapshot["kind"] == "skill_test"

    restored = AttemptSession.from_snapshot(session.session_key, json.loads(json.dumps(snapshot)),
                                            skill_test_definition)
    assert restored.answers == session.answers


def test_snapshot_drops_answers_for_removed_questions(skill_test_definition):
    session = new_session(skill_test_definition, 5, START_MS)
    snapshot = session.to_snapshot()
    snapshot["answers"] = {"1": "A", "999": "Z"}
    snapshot["lastPersistedAtEpochMs"] = START_MS
    restored = AttemptSession.from_snapshot(session.session_key, snapshot, skill_test_definition)
    assert restored.answers == {1: Scalar("A")}
