"""
Objective auto-grading of exam answers.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from ..core.entities import ExamQuestion, ExamAnswer, AnswerValue, ChoiceAnswer, EssayAnswer, MatrixAnswer
from ..core.enums import QuestionType
from ..core.exceptions import ValidationError
from .scoring import round_half_up, to_decimal


@dataclass(frozen=True)
class GradeOutcome:
    """Correctness and awarded marks; both None for answers awaiting a human."""
    is_correct: Optional[bool]
    awarded_marks: Optional[float]

    @property
    def is_graded(self) -> bool:
        return self.awarded_marks is not None


UNGRADED = GradeOutcome(is_correct=None, awarded_marks=None)


class GradingEngine:
    """Grades answers by question type.

    Essays are never auto-graded; they stay ungraded until
    ``ExamService.grade_essay_answer`` records a human's marks.
    """

    def grade(self, question: ExamQuestion, value: Optional[AnswerValue]) -> GradeOutcome:
        question_type = question.question_type
        if question_type is QuestionType.SINGLE_CHOICE or question_type is QuestionType.TRUE_FALSE:
            return self._grade_choice(question, value)
        elif question_type is QuestionType.MATRIX:
            return self._grade_matrix(question, value)
        elif question_type is QuestionType.ESSAY:
            return UNGRADED
        raise ValidationError(f"Unsupported question type: {question_type!r}")

    def _grade_choice(self, question: ExamQuestion, value: Optional[AnswerValue]) -> GradeOutcome:
        option = None
        if isinstance(value, ChoiceAnswer) and value.option_id is not None:
            option = question.option(value.option_id)
        if option is not None and option.is_correct:
            return GradeOutcome(is_correct=True, awarded_marks=float(question.marks))
        return GradeOutcome(is_correct=False, awarded_marks=0.0)

    def _grade_matrix(self, question: ExamQuestion, value: Optional[AnswerValue]) -> GradeOutcome:
        key = question.matrix_answers
        if not key:
            raise ValidationError(f"Matrix question {question.id} has no answer key")
        selections = value.selections if isinstance(value, MatrixAnswer) else {}
        correct_rows = sum(
            1 for row, expected in key.items()
            if frozenset(selections.get(row, frozenset())) == expected
        )
        # Rounded once for the whole question, never per row.
        awarded = round_half_up(to_decimal(question.marks) * correct_rows / len(key))
        return GradeOutcome(is_correct=correct_rows == len(key), awarded_marks=float(awarded))

    def validate_answer(self, question: ExamQuestion, value: Optional[AnswerValue]) -> None:
        """Reject a value whose variant or references do not fit the question."""
        if value is None:
            return
        question_type = question.question_type
        if question_type.is_choice:
            if not isinstance(value, ChoiceAnswer):
                raise ValidationError(f"Question {question.id} expects a selected option")
            if value.option_id is not None and question.option(value.option_id) is None:
                raise ValidationError(
                    f"Option {value.option_id} does not belong to question {question.id}",
                    details={"question_id": question.id, "option_id": value.option_id},
                )
        elif question_type is QuestionType.ESSAY:
            if not isinstance(value, EssayAnswer):
                raise ValidationError(f"Question {question.id} expects free text")
        elif question_type is QuestionType.MATRIX:
            if not isinstance(value, MatrixAnswer):
                raise ValidationError(f"Question {question.id} expects matrix selections")
            rows = set(question.row_keys)
            option_ids = question.option_ids
            for row, picked in value.selections.items():
                if row not in rows:
                    raise ValidationError(f"Row {row!r} does not exist in question {question.id}")
                unknown = set(picked) - option_ids
                if unknown:
                    raise ValidationError(
                        f"Options {sorted(unknown)} do not belong to question {question.id}",
                        details={"question_id": question.id, "row": row},
                    )
        else:
            raise ValidationError(f"Unsupported question type: {question_type!r}")

    @staticmethod
    def total_score(questions: Iterable[ExamQuestion],
                    answers_by_question: Mapping[str, ExamAnswer]) -> Optional[float]:
        """Sum of awarded marks, or None while any question is ungraded or unanswered."""
        total = 0.0
        for question in questions:
            answer = answers_by_question.get(question.id)
            if answer is None or answer.awarded_marks is None:
                return None
            total += answer.awarded_marks
        return total

    @staticmethod
    def provisional_score(answers: Iterable[ExamAnswer]) -> float:
        """Sum of awarded marks counting ungraded answers as zero."""
        return sum((a.awarded_marks or 0.0) for a in answers)
