"""
Exam subsystem: exam lifecycle, attempts, auto-saved answers and grading.

Every state check runs inside the same write transaction as the write it
guards, and attempt creation relies on the (exam, student) UNIQUE
constraint rather than a read followed by an insert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.entities import (
    Exam, ExamQuestion, ExamOption, ExamAttempt, ExamAnswer, ExamException,
    AnswerValue, new_id, utcnow,
)
from ..core.enums import QuestionType, EXAM_MAX, DEFAULT_EXAM_TOTAL_MARKS
from ..core.exceptions import ValidationError, StateError, NotFoundError, OutOfWindowError
from ..persistence.database import DatabaseManager, Transaction
from ..persistence.repositories import (
    ExamRepository, QuestionRepository, AttemptRepository, AnswerRepository, ExceptionRepository,
)
from .grading_engine import GradingEngine

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalize aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class AttemptResult:
    """What a student sees once an exam's results are released."""
    exam: Exam
    attempt: ExamAttempt
    answers: List[ExamAnswer] = field(default_factory=list)

    @property
    def total_score(self) -> Optional[float]:
        return self.attempt.total_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exam_id": self.exam.id,
            "exam_title": self.exam.title,
            "total_marks": self.exam.total_marks,
            "attempt": self.attempt.to_dict(),
            "answers": [a.to_dict() for a in self.answers],
            "total_score": self.total_score,
        }


class ExamService:
    """Service for exams, attempts and answers."""

    def __init__(self, database: DatabaseManager, grading_engine: Optional[GradingEngine] = None,
                 clock: Optional[Clock] = None):
        self._database = database
        self._grading = grading_engine or GradingEngine()
        self._clock = clock or utcnow

        self._exams = ExamRepository(database)
        self._questions = QuestionRepository(database)
        self._attempts = AttemptRepository(database)
        self._answers = AnswerRepository(database)
        self._exceptions = ExceptionRepository(database)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # Exams

    def create_exam(self, course_id: str, semester_id: str, title: str, start_at: datetime,
                    end_at: datetime, total_marks: float = DEFAULT_EXAM_TOTAL_MARKS) -> Exam:
        """Create a draft exam."""
        if not course_id or not semester_id:
            raise ValidationError("Exam needs a course and a semester")
        if not title or not title.strip():
            raise ValidationError("Exam title cannot be empty")
        start_at, end_at = as_utc(start_at), as_utc(end_at)
        if start_at >= end_at:
            raise ValidationError(
                "Exam must start before it ends",
                details={"start_at": start_at.isoformat(), "end_at": end_at.isoformat()},
            )
        if not 0 < total_marks <= EXAM_MAX:
            raise ValidationError(f"Exam total marks must be in (0, {EXAM_MAX}], got {total_marks}")

        exam = Exam(
            course_id=course_id,
            semester_id=semester_id,
            title=title.strip(),
            start_at=start_at,
            end_at=end_at,
            total_marks=total_marks,
            created_at=self._now(),
        )
        self._exams.insert(exam)
        logger.info("Created exam %s for course %s in semester %s", exam.id, course_id, semester_id)
        return exam

    def get_exam(self, exam_id: str) -> Exam:
        return self._require_exam(exam_id)

    def list_exams(self, semester_id: str, published_only: bool = False) -> List[Exam]:
        """Exams of a semester; students only see published ones."""
        return self._exams.find_by_semester(semester_id, published_only=published_only)

    def update_exam(self, exam_id: str, title: Optional[str] = None, start_at: Optional[datetime] = None,
                    end_at: Optional[datetime] = None, total_marks: Optional[float] = None) -> Exam:
        """Edit an exam nobody has attempted yet; omitted fields keep their value."""
        if title is not None and not title.strip():
            raise ValidationError("Exam title cannot be empty")
        if total_marks is not None and not 0 < total_marks <= EXAM_MAX:
            raise ValidationError(f"Exam total marks must be in (0, {EXAM_MAX}], got {total_marks}")

        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if self._attempts.exists_for_exam(exam_id, tx):
                raise StateError("Cannot edit an exam that has attempts", details={"exam_id": exam_id})
            if title is not None:
                exam.title = title.strip()
            if start_at is not None:
                exam.start_at = as_utc(start_at)
            if end_at is not None:
                exam.end_at = as_utc(end_at)
            if exam.start_at >= exam.end_at:
                raise ValidationError(
                    "Exam must start before it ends",
                    details={"start_at": exam.start_at.isoformat(), "end_at": exam.end_at.isoformat()},
                )
            if total_marks is not None:
                allocated = self._questions.total_marks(exam_id, tx)
                if allocated > total_marks:
                    raise ValidationError(
                        f"Exam total marks cannot drop below the allocated question marks "
                        f"({total_marks} < {allocated})",
                        details={"exam_id": exam_id},
                    )
                exam.total_marks = total_marks
            self._exams.update(exam, tx)
        logger.info("Updated exam %s", exam_id)
        return exam

    def publish_exam(self, exam_id: str) -> Exam:
        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if not exam.is_published:
                self._exams.set_flags(exam_id, is_published=True, tx=tx)
                exam.is_published = True
        logger.info("Published exam %s", exam_id)
        return exam

    def unpublish_exam(self, exam_id: str) -> Exam:
        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if exam.is_results_released:
                raise StateError("Cannot unpublish an exam whose results are released",
                                 details={"exam_id": exam_id})
            self._exams.set_flags(exam_id, is_published=False, tx=tx)
            exam.is_published = False
        logger.info("Unpublished exam %s", exam_id)
        return exam

    def delete_exam(self, exam_id: str) -> bool:
        """Delete an exam together with its questions, attempts, answers and exceptions."""
        deleted = self._exams.delete(exam_id)
        if not deleted:
            raise NotFoundError(f"Exam {exam_id} not found")
        logger.info("Deleted exam %s", exam_id)
        return deleted

    # Questions

    def add_question(self, exam_id: str, question_type: Union[QuestionType, str], text: str, marks: float,
                     options: Optional[Sequence[Tuple[str, bool]]] = None,
                     matrix_rows: Optional[Sequence[str]] = None,
                     matrix_columns: Optional[Sequence[str]] = None,
                     matrix_answers: Optional[Mapping[Any, Sequence[int]]] = None) -> ExamQuestion:
        """Add a question to an exam that nobody has attempted yet.

        Choice questions take ``options`` as ``(text, is_correct)`` pairs.
        Matrix questions take row labels, column labels, and a key mapping
        each row index to the indexes of its correct columns.
        """
        question_type = self._coerce_question_type(question_type)
        if not text or not text.strip():
            raise ValidationError("Question text cannot be empty")
        if marks is None or marks <= 0:
            raise ValidationError(f"Question marks must be positive, got {marks}")

        question = ExamQuestion(exam_id=exam_id, question_type=question_type, text=text.strip(), marks=marks)
        self._build_question_shape(question, options, matrix_rows, matrix_columns, matrix_answers)

        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if self._attempts.exists_for_exam(exam_id, tx):
                raise StateError("Cannot change the questions of an exam that has attempts",
                                 details={"exam_id": exam_id})
            allocated = self._questions.total_marks(exam_id, tx)
            if allocated + marks > exam.total_marks:
                raise ValidationError(
                    f"Question marks exceed the exam total ({allocated} + {marks} > {exam.total_marks})",
                    details={"exam_id": exam_id},
                )
            question.order_index = self._questions.next_order_index(exam_id, tx)
            self._questions.insert(question, tx)
        return question

    def update_question(self, question_id: str, text: Optional[str] = None, marks: Optional[float] = None,
                        options: Optional[Sequence[Tuple[str, bool]]] = None,
                        matrix_rows: Optional[Sequence[str]] = None,
                        matrix_columns: Optional[Sequence[str]] = None,
                        matrix_answers: Optional[Mapping[Any, Sequence[int]]] = None) -> ExamQuestion:
        """Edit a question of an exam nobody has attempted yet.

        The question type is fixed. Passing any of the shape arguments
        replaces the options (or matrix) wholesale, with the same rules as
        :meth:`add_question`; otherwise the current ones are kept.
        """
        if text is not None and not text.strip():
            raise ValidationError("Question text cannot be empty")
        if marks is not None and marks <= 0:
            raise ValidationError(f"Question marks must be positive, got {marks}")

        with self._database.transaction() as tx:
            question = self._require_question(question_id, tx)
            exam = self._require_exam(question.exam_id, tx)
            if self._attempts.exists_for_exam(exam.id, tx):
                raise StateError("Cannot change the questions of an exam that has attempts",
                                 details={"exam_id": exam.id})
            if text is not None:
                question.text = text.strip()
            if marks is not None:
                others = self._questions.total_marks(exam.id, tx) - question.marks
                if others + marks > exam.total_marks:
                    raise ValidationError(
                        f"Question marks exceed the exam total ({others} + {marks} > {exam.total_marks})",
                        details={"exam_id": exam.id},
                    )
                question.marks = marks
            if any(shape is not None for shape in (options, matrix_rows, matrix_columns, matrix_answers)):
                question.options, question.matrix_rows, question.matrix_answers = [], [], {}
                self._build_question_shape(question, options, matrix_rows, matrix_columns, matrix_answers)
            self._questions.replace(question, tx)
        logger.info("Updated question %s of exam %s", question_id, question.exam_id)
        return question

    def delete_question(self, question_id: str) -> bool:
        """Remove a question, with its options, from an exam nobody has attempted yet."""
        with self._database.transaction() as tx:
            question = self._require_question(question_id, tx)
            if self._attempts.exists_for_exam(question.exam_id, tx):
                raise StateError("Cannot change the questions of an exam that has attempts",
                                 details={"exam_id": question.exam_id})
            deleted = self._questions.delete(question_id, tx)
        logger.info("Deleted question %s of exam %s", question_id, question.exam_id)
        return deleted

    def get_questions(self, exam_id: str) -> List[ExamQuestion]:
        self._require_exam(exam_id)
        return self._questions.find_by_exam(exam_id)

    @staticmethod
    def _coerce_question_type(question_type: Union[QuestionType, str]) -> QuestionType:
        if isinstance(question_type, QuestionType):
            return question_type
        try:
            return QuestionType(question_type)
        except ValueError:
            raise ValidationError(f"Unknown question type: {question_type!r}")

    def _build_question_shape(self, question: ExamQuestion, options, matrix_rows, matrix_columns,
                              matrix_answers) -> None:
        question_type = question.question_type
        if question_type.is_choice:
            if matrix_rows or matrix_columns or matrix_answers:
                raise ValidationError("Choice questions take no matrix rows or columns")
            options = list(options or [])
            if question_type is QuestionType.TRUE_FALSE and len(options) != 2:
                raise ValidationError("True/false questions need exactly two options")
            if len(options) < 2:
                raise ValidationError("Choice questions need at least two options")
            if sum(1 for _, is_correct in options if is_correct) != 1:
                raise ValidationError("Choice questions need exactly one correct option")
            question.options = [
                ExamOption(question_id=question.id, text=option_text, is_correct=bool(is_correct), order_index=i)
                for i, (option_text, is_correct) in enumerate(options)
            ]
        elif question_type is QuestionType.ESSAY:
            if options or matrix_rows or matrix_columns or matrix_answers:
                raise ValidationError("Essay questions take no options")
        elif question_type is QuestionType.MATRIX:
            if options:
                raise ValidationError("Matrix questions take columns, not options")
            rows = list(matrix_rows or [])
            columns = list(matrix_columns or [])
            if not rows or not columns:
                raise ValidationError("Matrix questions need at least one row and one column")
            question.matrix_rows = rows
            question.options = [
                ExamOption(question_id=question.id, text=column, order_index=i)
                for i, column in enumerate(columns)
            ]
            key: Dict[str, frozenset] = {}
            for row, picked in (matrix_answers or {}).items():
                row_key = str(row)
                if row_key not in question.row_keys:
                    raise ValidationError(f"Answer key names unknown row {row!r}")
                picked = list(picked)
                if not picked:
                    raise ValidationError(f"Answer key for row {row!r} is empty")
                if any(not 0 <= index < len(columns) for index in picked):
                    raise ValidationError(f"Answer key for row {row!r} names an unknown column")
                key[row_key] = frozenset(question.options[index].id for index in picked)
            missing = [row_key for row_key in question.row_keys if row_key not in key]
            if missing:
                raise ValidationError(f"Answer key is missing rows {missing}")
            question.matrix_answers = key
        else:
            raise ValidationError(f"Unsupported question type: {question_type!r}")

    # Exceptions

    def grant_exception(self, exam_id: str, student_id: str, extended_until: datetime) -> ExamException:
        """Extend one student's deadline; replaces any earlier extension."""
        extended_until = as_utc(extended_until)
        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if extended_until <= exam.end_at:
                raise ValidationError(
                    "An exception must extend past the exam's end",
                    details={"exam_id": exam_id, "end_at": exam.end_at.isoformat()},
                )
            self._exceptions.upsert(
                ExamException(exam_id=exam_id, student_id=student_id, extended_until=extended_until,
                              created_at=self._now()),
                tx,
            )
            exception = self._exceptions.find(exam_id, student_id, tx)
        logger.info("Extended exam %s for student %s until %s", exam_id, student_id, extended_until.isoformat())
        return exception

    def revoke_exception(self, exam_id: str, student_id: str) -> bool:
        return self._exceptions.delete(exam_id, student_id)

    def list_exceptions(self, exam_id: str) -> List[ExamException]:
        return self._exceptions.find_by_exam(exam_id)

    def effective_window(self, exam: Exam, student_id: str,
                         tx: Optional[Transaction] = None) -> Tuple[datetime, datetime]:
        """``[start_at, extended_until or end_at]`` for one student."""
        exception = self._exceptions.find(exam.id, student_id, tx)
        end = exception.extended_until if exception is not None else exam.end_at
        return as_utc(exam.start_at), as_utc(end)

    def _check_window(self, exam: Exam, student_id: str, tx: Transaction) -> None:
        start, end = self.effective_window(exam, student_id, tx)
        now = self._now()
        if now < start:
            raise OutOfWindowError(OutOfWindowError.TOO_EARLY,
                                   details={"exam_id": exam.id, "start_at": start.isoformat()})
        if now > end:
            raise OutOfWindowError(OutOfWindowError.TOO_LATE,
                                   details={"exam_id": exam.id, "end_at": end.isoformat()})

    # Attempts

    def create_or_get_attempt(self, exam_id: str, student_id: str) -> ExamAttempt:
        """Start the student's attempt, or return the one already in progress."""
        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if not exam.is_published:
                raise StateError("Exam is not published", details={"exam_id": exam_id})
            self._check_window(exam, student_id, tx)

            created = self._attempts.create_if_absent(
                ExamAttempt(exam_id=exam_id, student_id=student_id, started_at=self._now()), tx
            )
            attempt = self._attempts.find_for_student(exam_id, student_id, tx)
            if attempt.is_submitted:
                raise StateError("attempt already submitted", details={"attempt_id": attempt.id})
        if created:
            logger.info("Student %s started exam %s (attempt %s)", student_id, exam_id, attempt.id)
        return attempt

    def get_attempt(self, attempt_id: str) -> ExamAttempt:
        return self._require_attempt(attempt_id)

    def list_attempts(self, exam_id: str) -> List[ExamAttempt]:
        self._require_exam(exam_id)
        return self._attempts.find_by_exam(exam_id)

    def get_answers(self, attempt_id: str) -> List[ExamAnswer]:
        self._require_attempt(attempt_id)
        return self._answers.find_by_attempt(attempt_id)

    def save_answer(self, attempt_id: str, question_id: str, value: Optional[AnswerValue]) -> ExamAnswer:
        """Auto-save one answer, overwriting whatever was saved before."""
        with self._database.transaction() as tx:
            attempt = self._require_attempt(attempt_id, tx)
            if attempt.is_submitted:
                raise StateError("attempt already submitted", details={"attempt_id": attempt_id})
            exam = self._require_exam(attempt.exam_id, tx)
            self._check_window(exam, attempt.student_id, tx)

            question = self._require_question_of(exam.id, question_id, tx)
            self._grading.validate_answer(question, value)
            self._answers.upsert(
                ExamAnswer(attempt_id=attempt_id, question_id=question_id, value=value, updated_at=self._now()),
                tx,
            )
            saved = self._answers.find_one(attempt_id, question_id, tx)
        logger.debug("Saved answer to question %s on attempt %s", question_id, attempt_id)
        return saved

    def submit_attempt(self, attempt_id: str,
                       answers: Optional[Mapping[str, Optional[AnswerValue]]] = None) -> ExamAttempt:
        """Persist the final answers, auto-grade them and close the attempt.

        ``answers`` maps question ids to values and is written over anything
        saved before. Unanswered questions get a blank answer. The total stays
        None while an essay awaits grading.
        """
        with self._database.transaction() as tx:
            attempt = self._require_attempt(attempt_id, tx)
            if attempt.is_submitted:
                raise StateError("attempt already submitted", details={"attempt_id": attempt_id})
            exam = self._require_exam(attempt.exam_id, tx)
            self._check_window(exam, attempt.student_id, tx)

            now = self._now()
            questions = self._questions.find_by_exam(exam.id, tx)
            by_id = {q.id: q for q in questions}
            for question_id, value in (answers or {}).items():
                question = by_id.get(question_id)
                if question is None:
                    raise ValidationError(f"Question {question_id} does not belong to exam {exam.id}",
                                          details={"question_id": question_id})
                self._grading.validate_answer(question, value)
                self._answers.upsert(
                    ExamAnswer(attempt_id=attempt_id, question_id=question_id, value=value, updated_at=now), tx
                )
            for question in questions:
                self._answers.insert_blank_if_absent(attempt_id, question.id, new_id(), now, tx)

            total = self._grade_attempt(attempt_id, by_id, tx)
            if not self._attempts.mark_submitted(attempt_id, now, total, tx):
                raise StateError("attempt already submitted", details={"attempt_id": attempt_id})
            attempt.is_submitted = True
            attempt.submitted_at = now
            attempt.total_score = total
        logger.info("Attempt %s submitted with total %s", attempt_id, total)
        return attempt

    def _grade_attempt(self, attempt_id: str, questions: Mapping[str, ExamQuestion],
                       tx: Transaction) -> Optional[float]:
        """Auto-grade the objective answers of an attempt and return its total.

        Essay grades recorded by a human are left as they are.
        """
        graded: Dict[str, ExamAnswer] = {}
        for answer in self._answers.find_by_attempt(attempt_id, tx):
            question = questions.get(answer.question_id)
            if question is None:
                continue
            if question.question_type is not QuestionType.ESSAY:
                outcome = self._grading.grade(question, answer.value)
                self._answers.set_grade(answer.id, outcome.is_correct, outcome.awarded_marks, tx)
                answer.is_correct = outcome.is_correct
                answer.awarded_marks = outcome.awarded_marks
            graded[answer.question_id] = answer
        return self._grading.total_score(questions.values(), graded)

    def grade_essay_answer(self, answer_id: str, marks: float, is_correct: Optional[bool] = None) -> ExamAnswer:
        """Record a human's marks for an essay answer and refresh the attempt total."""
        with self._database.transaction() as tx:
            answer = self._answers.find_by_id(answer_id, tx)
            if answer is None:
                raise NotFoundError(f"Answer {answer_id} not found")
            attempt = self._require_attempt(answer.attempt_id, tx)
            question = self._questions.find_by_id(answer.question_id, tx)
            if question is None or question.question_type is not QuestionType.ESSAY:
                raise ValidationError("Only essay answers are graded manually", details={"answer_id": answer_id})
            if not attempt.is_submitted:
                raise StateError("Essays are graded after the attempt is submitted",
                                 details={"attempt_id": attempt.id})
            if marks is None or not 0 <= marks <= question.marks:
                raise ValidationError(f"Essay marks must be between 0 and {question.marks}, got {marks}")

            self._answers.set_grade(answer_id, is_correct, float(marks), tx)
            questions = self._questions.find_by_exam(attempt.exam_id, tx)
            answers = {a.question_id: a for a in self._answers.find_by_attempt(attempt.id, tx)}
            total = self._grading.total_score(questions, answers)
            self._attempts.set_total(attempt.id, total, tx)
            graded = answers[answer.question_id]
        logger.info("Graded essay answer %s with %s marks", answer_id, marks)
        return graded

    # Results

    def release_exam_results(self, exam_id: str) -> Exam:
        """Re-grade every submitted attempt and make the results visible."""
        with self._database.transaction() as tx:
            exam = self._require_exam(exam_id, tx)
            if not exam.is_published:
                raise StateError("Exam is not published", details={"exam_id": exam_id})
            if exam.is_results_released:
                raise StateError("Exam results are already released", details={"exam_id": exam_id})

            questions = {q.id: q for q in self._questions.find_by_exam(exam_id, tx)}
            attempts = [a for a in self._attempts.find_by_exam(exam_id, tx) if a.is_submitted]
            for attempt in attempts:
                total = self._grade_attempt(attempt.id, questions, tx)
                self._attempts.set_total(attempt.id, total, tx)
            self._exams.set_flags(exam_id, is_results_released=True, tx=tx)
            exam.is_results_released = True
        logger.info("Released results of exam %s (%d submitted attempts)", exam_id, len(attempts))
        return exam

    def get_attempt_result(self, attempt_id: str) -> AttemptResult:
        attempt = self._require_attempt(attempt_id)
        exam = self._require_exam(attempt.exam_id)
        if not exam.is_results_released:
            raise StateError("Exam results are not released yet", details={"exam_id": exam.id})
        return AttemptResult(exam=exam, attempt=attempt, answers=self._answers.find_by_attempt(attempt_id))

    def released_score(self, exam_id: str, student_id: str,
                       tx: Optional[Transaction] = None) -> Optional[float]:
        """Score a transcript uses for one student's exam.

        The attempt total when known, otherwise the awarded marks so far with
        ungraded answers counted as zero. None when the student never started.
        """
        attempt = self._attempts.find_for_student(exam_id, student_id, tx)
        if attempt is None:
            return None
        if attempt.total_score is not None:
            return attempt.total_score
        return self._grading.provisional_score(self._answers.find_by_attempt(attempt.id, tx))

    # Lookups

    def _require_exam(self, exam_id: str, tx: Optional[Transaction] = None) -> Exam:
        exam = self._exams.find_by_id(exam_id, tx)
        if exam is None:
            raise NotFoundError(f"Exam {exam_id} not found", details={"exam_id": exam_id})
        return exam

    def _require_attempt(self, attempt_id: str, tx: Optional[Transaction] = None) -> ExamAttempt:
        attempt = self._attempts.find_by_id(attempt_id, tx)
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found", details={"attempt_id": attempt_id})
        return attempt

    def _require_question_of(self, exam_id: str, question_id: str, tx: Transaction) -> ExamQuestion:
        question = self._questions.find_by_id(question_id, tx)
        if question is None or question.exam_id != exam_id:
            raise ValidationError(f"Question {question_id} does not belong to exam {exam_id}",
                                  details={"question_id": question_id})
        return question

    def _require_question(self, question_id: str, tx: Optional[Transaction] = None) -> ExamQuestion:
        question = self._questions.find_by_id(question_id, tx)
        if question is None:
            raise NotFoundError(f"Question {question_id} not found", details={"question_id": question_id})
        return question
