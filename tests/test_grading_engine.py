import pytest

from scholaris.core.entities import (
    ExamQuestion, ExamOption, ExamAnswer, ChoiceAnswer, EssayAnswer, MatrixAnswer,
)
from scholaris.core.enums import QuestionType
from scholaris.core.exceptions import ValidationError
from scholaris.services.grading_engine import GradingEngine, UNGRADED


@pytest.fixture
def engine():
    return GradingEngine()


def choice_question(marks=10):
    question = ExamQuestion(exam_id="e1", question_type=QuestionType.SINGLE_CHOICE, text="q", marks=marks)
    question.options = [
        ExamOption(question_id=question.id, text="right", is_correct=True, id="right"),
        ExamOption(question_id=question.id, text="wrong", id="wrong"),
    ]
    return question


def matrix_question(marks, rows):
    question = ExamQuestion(exam_id="e1", question_type=QuestionType.MATRIX, text="m", marks=marks)
    question.options = [ExamOption(question_id=question.id, text=c, id=c) for c in ("a", "b", "c")]
    question.matrix_rows = [f"row {i}" for i in range(rows)]
    question.matrix_answers = {str(i): frozenset({"a"}) for i in range(rows)}
    return question


def test_choice_correct_gets_full_marks(engine):
    outcome = engine.grade(choice_question(), ChoiceAnswer("right"))
    assert outcome.is_correct is True
    assert outcome.awarded_marks == 10


@pytest.mark.parametrize("value", [ChoiceAnswer("wrong"), ChoiceAnswer(None), None])
def test_choice_wrong_or_blank_gets_zero(engine, value):
    outcome = engine.grade(choice_question(), value)
    assert outcome.is_correct is False
    assert outcome.awarded_marks == 0


def test_essay_is_never_auto_graded(engine):
    question = ExamQuestion(exam_id="e1", question_type=QuestionType.ESSAY, text="e", marks=20)
    assert engine.grade(question, EssayAnswer("words")) == UNGRADED


@pytest.mark.parametrize("marks, rows, correct, expected", [
    (20, 3, 2, 13),
    (5, 2, 1, 3),
    (10, 4, 1, 3),
    (10, 4, 4, 10),
    (10, 4, 0, 0),
])
def test_matrix_partial_credit_rounds_once(engine, marks, rows, correct, expected):
    question = matrix_question(marks, rows)
    selections = {str(i): ["a"] if i < correct else ["b"] for i in range(rows)}
    outcome = engine.grade(question, MatrixAnswer.from_lists(selections))
    assert outcome.awarded_marks == expected
    assert outcome.is_correct is (correct == rows)


def test_matrix_row_needs_exact_set(engine):
    question = matrix_question(10, 1)
    outcome = engine.grade(question, MatrixAnswer.from_lists({"0": ["a", "b"]}))
    assert outcome.awarded_marks == 0


def test_validate_rejects_mismatched_variant(engine):
    with pytest.raises(ValidationError):
        engine.validate_answer(choice_question(), EssayAnswer("text"))


def test_validate_rejects_foreign_option(engine):
    with pytest.raises(ValidationError):
        engine.validate_answer(choice_question(), ChoiceAnswer("elsewhere"))
    with pytest.raises(ValidationError):
        engine.validate_answer(matrix_question(10, 2), MatrixAnswer.from_lists({"0": ["zzz"]}))
    with pytest.raises(ValidationError):
        engine.validate_answer(matrix_question(10, 2), MatrixAnswer.from_lists({"7": ["a"]}))


def test_total_score_is_none_while_anything_is_ungraded():
    question = choice_question()
    graded = ExamAnswer(attempt_id="a1", question_id=question.id, awarded_marks=10)
    pending = ExamAnswer(attempt_id="a1", question_id="essay")
    essay = ExamQuestion(exam_id="e1", question_type=QuestionType.ESSAY, text="e", marks=20, id="essay")

    assert GradingEngine.total_score([question], {question.id: graded}) == 10
    assert GradingEngine.total_score([question, essay], {question.id: graded, "essay": pending}) is None
    assert GradingEngine.provisional_score([graded, pending]) == 10
