"""
Repository pattern implementations for data access.

Every method accepts an optional :class:`Transaction`; when given, the
statement joins that transaction, otherwise it runs on its own connection.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.entities import (
    Exam, ExamQuestion, ExamOption, ExamAttempt, ExamAnswer, ExamException,
    SemesterTranscript, TranscriptCourse, ChoiceAnswer, EssayAnswer, MatrixAnswer,
    AnswerValue,
)
from ..core.enums import QuestionType
from .database import DatabaseManager, Transaction


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO string; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _flag(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


class BaseRepository:
    """Base repository implementation with common functionality."""

    def __init__(self, database: DatabaseManager):
        self._database = database

    def _query(self, query: str, params: tuple = (), tx: Optional[Transaction] = None) -> List[Dict[str, Any]]:
        if tx is not None:
            return tx.query(query, params)
        return self._database.execute_query(query, params)

    def _execute(self, query: str, params: tuple = (), tx: Optional[Transaction] = None) -> int:
        if tx is not None:
            return tx.execute(query, params)
        return self._database.execute_update(query, params)


class ExamRepository(BaseRepository):
    """Repository for Exam entities."""

    def insert(self, exam: Exam, tx: Optional[Transaction] = None) -> Exam:
        self._execute(
            """
            INSERT INTO exams (id, course_id, semester_id, title, start_at, end_at,
                               total_marks, is_published, is_results_released, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (exam.id, exam.course_id, exam.semester_id, exam.title,
             to_iso(exam.start_at), to_iso(exam.end_at), exam.total_marks,
             int(exam.is_published), int(exam.is_results_released), to_iso(exam.created_at)),
            tx,
        )
        return exam

    def find_by_id(self, exam_id: str, tx: Optional[Transaction] = None) -> Optional[Exam]:
        rows = self._query("SELECT * FROM exams WHERE id = ?", (exam_id,), tx)
        return self._entity_from_row(rows[0]) if rows else None

    def find_by_semester(self, semester_id: str, published_only: bool = False) -> List[Exam]:
        published = " AND is_published = 1" if published_only else ""
        rows = self._query(
            f"SELECT * FROM exams WHERE semester_id = ?{published} ORDER BY created_at, id", (semester_id,)
        )
        return [self._entity_from_row(row) for row in rows]

    def find_latest_released(self, course_id: str, semester_id: str,
                             tx: Optional[Transaction] = None) -> Optional[Exam]:
        """Most recently created results-released exam of a course in a semester."""
        rows = self._query(
            """
            SELECT * FROM exams
            WHERE course_id = ? AND semester_id = ? AND is_results_released = 1
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (course_id, semester_id),
            tx,
        )
        return self._entity_from_row(rows[0]) if rows else None

    def set_flags(self, exam_id: str, is_published: Optional[bool] = None,
                  is_results_released: Optional[bool] = None,
                  tx: Optional[Transaction] = None) -> int:
        assignments = []
        params: List[Any] = []
        if is_published is not None:
            assignments.append("is_published = ?")
            params.append(int(is_published))
        if is_results_released is not None:
            assignments.append("is_results_released = ?")
            params.append(int(is_results_released))
        if not assignments:
            return 0
        params.append(exam_id)
        return self._execute(f"UPDATE exams SET {', '.join(assignments)} WHERE id = ?", tuple(params), tx)

    def update(self, exam: Exam, tx: Optional[Transaction] = None) -> Exam:
        self._execute(
            "UPDATE exams SET title = ?, start_at = ?, end_at = ?, total_marks = ? WHERE id = ?",
            (exam.title, to_iso(exam.start_at), to_iso(exam.end_at), exam.total_marks, exam.id),
            tx,
        )
        return exam

    def delete(self, exam_id: str, tx: Optional[Transaction] = None) -> bool:
        return self._execute("DELETE FROM exams WHERE id = ?", (exam_id,), tx) > 0

    def _entity_from_row(self, row: Dict[str, Any]) -> Exam:
        return Exam(
            id=row["id"],
            course_id=row["course_id"],
            semester_id=row["semester_id"],
            title=row["title"],
            start_at=from_iso(row["start_at"]),
            end_at=from_iso(row["end_at"]),
            total_marks=row["total_marks"],
            is_published=bool(row["is_published"]),
            is_results_released=bool(row["is_results_released"]),
            created_at=from_iso(row["created_at"]),
        )


class QuestionRepository(BaseRepository):
    """Repository for questions and their options."""

    @staticmethod
    def _matrix_columns(question: ExamQuestion) -> tuple:
        if question.question_type is not QuestionType.MATRIX:
            return None, None
        return (json.dumps(question.matrix_rows),
                json.dumps({row: sorted(ids) for row, ids in question.matrix_answers.items()}))

    def _insert_options(self, question: ExamQuestion, tx: Optional[Transaction]) -> None:
        for option in question.options:
            self._execute(
                "INSERT INTO exam_options (id, question_id, text, is_correct, order_index) VALUES (?, ?, ?, ?, ?)",
                (option.id, question.id, option.text, int(option.is_correct), option.order_index),
                tx,
            )

    def insert(self, question: ExamQuestion, tx: Optional[Transaction] = None) -> ExamQuestion:
        self._execute(
            """
            INSERT INTO exam_questions (id, exam_id, question_type, text, marks, order_index,
                                        matrix_rows, matrix_answers)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (question.id, question.exam_id, question.question_type.value, question.text,
             question.marks, question.order_index) + self._matrix_columns(question),
            tx,
        )
        self._insert_options(question, tx)
        return question

    def replace(self, question: ExamQuestion, tx: Optional[Transaction] = None) -> ExamQuestion:
        """Rewrite a question's row and swap in its current options."""
        self._execute(
            "UPDATE exam_questions SET text = ?, marks = ?, matrix_rows = ?, matrix_answers = ? WHERE id = ?",
            (question.text, question.marks) + self._matrix_columns(question) + (question.id,),
            tx,
        )
        self._execute("DELETE FROM exam_options WHERE question_id = ?", (question.id,), tx)
        self._insert_options(question, tx)
        return question

    def delete(self, question_id: str, tx: Optional[Transaction] = None) -> bool:
        return self._execute("DELETE FROM exam_questions WHERE id = ?", (question_id,), tx) > 0

    def find_by_id(self, question_id: str, tx: Optional[Transaction] = None) -> Optional[ExamQuestion]:
        rows = self._query("SELECT * FROM exam_questions WHERE id = ?", (question_id,), tx)
        if not rows:
            return None
        return self._attach_options([self._entity_from_row(rows[0])], tx)[0]

    def find_by_exam(self, exam_id: str, tx: Optional[Transaction] = None) -> List[ExamQuestion]:
        rows = self._query(
            "SELECT * FROM exam_questions WHERE exam_id = ? ORDER BY order_index, id", (exam_id,), tx
        )
        return self._attach_options([self._entity_from_row(row) for row in rows], tx)

    def total_marks(self, exam_id: str, tx: Optional[Transaction] = None) -> float:
        rows = self._query(
            "SELECT COALESCE(SUM(marks), 0) AS total FROM exam_questions WHERE exam_id = ?", (exam_id,), tx
        )
        return rows[0]["total"]

    def next_order_index(self, exam_id: str, tx: Optional[Transaction] = None) -> int:
        rows = self._query(
            "SELECT COALESCE(MAX(order_index) + 1, 0) AS next_index FROM exam_questions WHERE exam_id = ?",
            (exam_id,),
            tx,
        )
        return rows[0]["next_index"]

    def _attach_options(self, questions: List[ExamQuestion],
                        tx: Optional[Transaction] = None) -> List[ExamQuestion]:
        if not questions:
            return questions
        by_id = {q.id: q for q in questions}
        placeholders = ", ".join("?" for _ in by_id)
        rows = self._query(
            f"SELECT * FROM exam_options WHERE question_id IN ({placeholders}) ORDER BY order_index, id",
            tuple(by_id),
            tx,
        )
        for row in rows:
            by_id[row["question_id"]].options.append(ExamOption(
                id=row["id"],
                question_id=row["question_id"],
                text=row["text"],
                is_correct=bool(row["is_correct"]),
                order_index=row["order_index"],
            ))
        return questions

    def _entity_from_row(self, row: Dict[str, Any]) -> ExamQuestion:
        matrix_answers = json.loads(row["matrix_answers"]) if row["matrix_answers"] else {}
        return ExamQuestion(
            id=row["id"],
            exam_id=row["exam_id"],
            question_type=QuestionType(row["question_type"]),
            text=row["text"],
            marks=row["marks"],
            order_index=row["order_index"],
            matrix_rows=json.loads(row["matrix_rows"]) if row["matrix_rows"] else [],
            matrix_answers={row_key: frozenset(ids) for row_key, ids in matrix_answers.items()},
        )


class AttemptRepository(BaseRepository):
    """Repository for exam attempts."""

    def create_if_absent(self, attempt: ExamAttempt, tx: Optional[Transaction] = None) -> bool:
        """Insert unless an attempt for the same (exam, student) exists.

        The UNIQUE constraint decides; returns True when this call created it.
        """
        created = self._execute(
            """
            INSERT INTO exam_attempts (id, exam_id, student_id, started_at, submitted_at,
                                       total_score, is_submitted)
            VALUES (?, ?, ?, ?, NULL, NULL, 0)
            ON CONFLICT (exam_id, student_id) DO NOTHING
            """,
            (attempt.id, attempt.exam_id, attempt.student_id, to_iso(attempt.started_at)),
            tx,
        )
        return created > 0

    def find_by_id(self, attempt_id: str, tx: Optional[Transaction] = None) -> Optional[ExamAttempt]:
        rows = self._query("SELECT * FROM exam_attempts WHERE id = ?", (attempt_id,), tx)
        return self._entity_from_row(rows[0]) if rows else None

    def find_for_student(self, exam_id: str, student_id: str,
                         tx: Optional[Transaction] = None) -> Optional[ExamAttempt]:
        rows = self._query(
            "SELECT * FROM exam_attempts WHERE exam_id = ? AND student_id = ?", (exam_id, student_id), tx
        )
        return self._entity_from_row(rows[0]) if rows else None

    def find_by_exam(self, exam_id: str, tx: Optional[Transaction] = None) -> List[ExamAttempt]:
        rows = self._query(
            "SELECT * FROM exam_attempts WHERE exam_id = ? ORDER BY started_at, id", (exam_id,), tx
        )
        return [self._entity_from_row(row) for row in rows]

    def exists_for_exam(self, exam_id: str, tx: Optional[Transaction] = None) -> bool:
        rows = self._query("SELECT 1 FROM exam_attempts WHERE exam_id = ? LIMIT 1", (exam_id,), tx)
        return bool(rows)

    def mark_submitted(self, attempt_id: str, submitted_at: datetime, total_score: Optional[float],
                       tx: Optional[Transaction] = None) -> bool:
        """Flip the submitted flag; a no-op (False) when it is already set."""
        updated = self._execute(
            """
            UPDATE exam_attempts SET is_submitted = 1, submitted_at = ?, total_score = ?
            WHERE id = ? AND is_submitted = 0
            """,
            (to_iso(submitted_at), total_score, attempt_id),
            tx,
        )
        return updated > 0

    def set_total(self, attempt_id: str, total_score: Optional[float],
                  tx: Optional[Transaction] = None) -> None:
        self._execute("UPDATE exam_attempts SET total_score = ? WHERE id = ?", (total_score, attempt_id), tx)

    def _entity_from_row(self, row: Dict[str, Any]) -> ExamAttempt:
        return ExamAttempt(
            id=row["id"],
            exam_id=row["exam_id"],
            student_id=row["student_id"],
            started_at=from_iso(row["started_at"]),
            submitted_at=from_iso(row["submitted_at"]),
            total_score=row["total_score"],
            is_submitted=bool(row["is_submitted"]),
        )


class AnswerRepository(BaseRepository):
    """Repository for exam answers."""

    def upsert(self, answer: ExamAnswer, tx: Optional[Transaction] = None) -> None:
        """Write the answer for (attempt, question), replacing any earlier value.

        Replacing a value clears its grading.
        """
        selected, essay, matrix = self._columns_for(answer.value)
        self._execute(
            """
            INSERT INTO exam_answers (id, attempt_id, question_id, selected_option_id, essay_text,
                                      matrix_selections, is_correct, awarded_marks, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?)
            ON CONFLICT (attempt_id, question_id) DO UPDATE SET
                selected_option_id = excluded.selected_option_id,
                essay_text = excluded.essay_text,
                matrix_selections = excluded.matrix_selections,
                is_correct = NULL,
                awarded_marks = NULL,
                updated_at = excluded.updated_at
            """,
            (answer.id, answer.attempt_id, answer.question_id, selected, essay, matrix,
             to_iso(answer.updated_at)),
            tx,
        )

    def insert_blank_if_absent(self, attempt_id: str, question_id: str, answer_id: str,
                               updated_at: datetime, tx: Optional[Transaction] = None) -> None:
        self._execute(
            """
            INSERT INTO exam_answers (id, attempt_id, question_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (attempt_id, question_id) DO NOTHING
            """,
            (answer_id, attempt_id, question_id, to_iso(updated_at)),
            tx,
        )

    def find_by_id(self, answer_id: str, tx: Optional[Transaction] = None) -> Optional[ExamAnswer]:
        rows = self._query("SELECT * FROM exam_answers WHERE id = ?", (answer_id,), tx)
        return self._entity_from_row(rows[0]) if rows else None

    def find_one(self, attempt_id: str, question_id: str,
                 tx: Optional[Transaction] = None) -> Optional[ExamAnswer]:
        rows = self._query(
            "SELECT * FROM exam_answers WHERE attempt_id = ? AND question_id = ?", (attempt_id, question_id), tx
        )
        return self._entity_from_row(rows[0]) if rows else None

    def find_by_attempt(self, attempt_id: str, tx: Optional[Transaction] = None) -> List[ExamAnswer]:
        rows = self._query(
            "SELECT * FROM exam_answers WHERE attempt_id = ? ORDER BY question_id", (attempt_id,), tx
        )
        return [self._entity_from_row(row) for row in rows]

    def set_grade(self, answer_id: str, is_correct: Optional[bool], awarded_marks: Optional[float],
                  tx: Optional[Transaction] = None) -> None:
        self._execute(
            "UPDATE exam_answers SET is_correct = ?, awarded_marks = ? WHERE id = ?",
            (None if is_correct is None else int(is_correct), awarded_marks, answer_id),
            tx,
        )

    @staticmethod
    def _columns_for(value: Optional[AnswerValue]):
        if value is None:
            return None, None, None
        if isinstance(value, ChoiceAnswer):
            return value.option_id, None, None
        if isinstance(value, EssayAnswer):
            return None, value.text, None
        if isinstance(value, MatrixAnswer):
            encoded = {row: sorted(picked) for row, picked in value.selections.items()}
            return None, None, json.dumps(encoded, sort_keys=True)
        raise TypeError(f"Unsupported answer value: {type(value).__name__}")

    def _entity_from_row(self, row: Dict[str, Any]) -> ExamAnswer:
        value: Optional[AnswerValue] = None
        if row["selected_option_id"] is not None:
            value = ChoiceAnswer(option_id=row["selected_option_id"])
        elif row["essay_text"] is not None:
            value = EssayAnswer(text=row["essay_text"])
        elif row["matrix_selections"] is not None:
            value = MatrixAnswer.from_lists(json.loads(row["matrix_selections"]))
        return ExamAnswer(
            id=row["id"],
            attempt_id=row["attempt_id"],
            question_id=row["question_id"],
            value=value,
            is_correct=_flag(row["is_correct"]),
            awarded_marks=row["awarded_marks"],
            updated_at=from_iso(row["updated_at"]),
        )


class ExceptionRepository(BaseRepository):
    """Repository for per-student deadline extensions."""

    def upsert(self, exception: ExamException, tx: Optional[Transaction] = None) -> None:
        self._execute(
            """
            INSERT INTO exam_exceptions (id, exam_id, student_id, extended_until, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (exam_id, student_id) DO UPDATE SET extended_until = excluded.extended_until
            """,
            (exception.id, exception.exam_id, exception.student_id,
             to_iso(exception.extended_until), to_iso(exception.created_at)),
            tx,
        )

    def find(self, exam_id: str, student_id: str,
             tx: Optional[Transaction] = None) -> Optional[ExamException]:
        rows = self._query(
            "SELECT * FROM exam_exceptions WHERE exam_id = ? AND student_id = ?", (exam_id, student_id), tx
        )
        return self._entity_from_row(rows[0]) if rows else None

    def find_by_exam(self, exam_id: str) -> List[ExamException]:
        rows = self._query("SELECT * FROM exam_exceptions WHERE exam_id = ? ORDER BY student_id", (exam_id,))
        return [self._entity_from_row(row) for row in rows]

    def delete(self, exam_id: str, student_id: str, tx: Optional[Transaction] = None) -> bool:
        return self._execute(
            "DELETE FROM exam_exceptions WHERE exam_id = ? AND student_id = ?", (exam_id, student_id), tx
        ) > 0

    def _entity_from_row(self, row: Dict[str, Any]) -> ExamException:
        return ExamException(
            id=row["id"],
            exam_id=row["exam_id"],
            student_id=row["student_id"],
            extended_until=from_iso(row["extended_until"]),
            created_at=from_iso(row["created_at"]),
        )


class TranscriptRepository(BaseRepository):
    """Transcript store. Only the release engine writes through it."""

    def replace_for_student(self, transcript: SemesterTranscript, tx: Transaction) -> SemesterTranscript:
        """Delete the student's transcript for the semester and insert ``transcript``.

        Must run inside the caller's transaction so the swap is atomic.
        """
        tx.execute(
            """
            DELETE FROM transcript_courses WHERE transcript_id IN (
                SELECT id FROM semester_transcripts WHERE student_id = ? AND semester_id = ?
            )
            """,
            (transcript.student_id, transcript.semester_id),
        )
        tx.execute(
            "DELETE FROM semester_transcripts WHERE student_id = ? AND semester_id = ?",
            (transcript.student_id, transcript.semester_id),
        )
        tx.execute(
            """
            INSERT INTO semester_transcripts (id, student_id, semester_id, semester_name,
                                              semester_average, released_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (transcript.id, transcript.student_id, transcript.semester_id, transcript.semester_name,
             transcript.semester_average, to_iso(transcript.released_at)),
        )
        for course in transcript.courses:
            course.transcript_id = transcript.id
            tx.execute(
                """
                INSERT INTO transcript_courses (id, transcript_id, course_id, course_code, course_name,
                                                attendance_score, participation_score, assignments_score,
                                                exam_score, final_score, percentage)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (course.id, transcript.id, course.course_id, course.course_code, course.course_name,
                 course.attendance_score, course.participation_score, course.assignments_score,
                 course.exam_score, course.final_score, course.percentage),
            )
        return transcript

    def delete_semester(self, semester_id: str, tx: Optional[Transaction] = None) -> int:
        """Delete every transcript of a semester; returns how many were removed."""
        self._execute(
            """
            DELETE FROM transcript_courses WHERE transcript_id IN (
                SELECT id FROM semester_transcripts WHERE semester_id = ?
            )
            """,
            (semester_id,),
            tx,
        )
        return self._execute("DELETE FROM semester_transcripts WHERE semester_id = ?", (semester_id,), tx)

    def delete_semester_except(self, semester_id: str, student_ids: List[str],
                               tx: Optional[Transaction] = None) -> int:
        """Delete the semester's transcripts of every student not in ``student_ids``."""
        if not student_ids:
            return self.delete_semester(semester_id, tx)
        placeholders = ", ".join("?" for _ in student_ids)
        params = (semester_id,) + tuple(student_ids)
        self._execute(
            f"""
            DELETE FROM transcript_courses WHERE transcript_id IN (
                SELECT id FROM semester_transcripts
                WHERE semester_id = ? AND student_id NOT IN ({placeholders})
            )
            """,
            params,
            tx,
        )
        return self._execute(
            f"DELETE FROM semester_transcripts WHERE semester_id = ? AND student_id NOT IN ({placeholders})",
            params,
            tx,
        )

    def count_for_semester(self, semester_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS count FROM semester_transcripts WHERE semester_id = ?", (semester_id,)
        )
        return rows[0]["count"] if rows else 0

    def find_by_student(self, student_id: str) -> List[SemesterTranscript]:
        with self._database.read_transaction() as tx:
            rows = self._query(
                """
                SELECT * FROM semester_transcripts WHERE student_id = ?
                ORDER BY released_at, semester_id
                """,
                (student_id,),
                tx,
            )
            return self._attach_courses([self._entity_from_row(row) for row in rows], tx)

    def find_one(self, student_id: str, semester_id: str) -> Optional[SemesterTranscript]:
        with self._database.read_transaction() as tx:
            rows = self._query(
                "SELECT * FROM semester_transcripts WHERE student_id = ? AND semester_id = ?",
                (student_id, semester_id),
                tx,
            )
            if not rows:
                return None
            return self._attach_courses([self._entity_from_row(rows[0])], tx)[0]

    def _attach_courses(self, transcripts: List[SemesterTranscript],
                        tx: Optional[Transaction] = None) -> List[SemesterTranscript]:
        if not transcripts:
            return transcripts
        by_id = {t.id: t for t in transcripts}
        placeholders = ", ".join("?" for _ in by_id)
        rows = self._query(
            f"SELECT * FROM transcript_courses WHERE transcript_id IN ({placeholders}) "
            f"ORDER BY course_code, course_id",
            tuple(by_id),
            tx,
        )
        for row in rows:
            by_id[row["transcript_id"]].courses.append(TranscriptCourse(
                id=row["id"],
                transcript_id=row["transcript_id"],
                course_id=row["course_id"],
                course_code=row["course_code"],
                course_name=row["course_name"],
                attendance_score=row["attendance_score"],
                participation_score=row["participation_score"],
                assignments_score=row["assignments_score"],
                exam_score=row["exam_score"],
                final_score=row["final_score"],
                percentage=row["percentage"],
            ))
        return transcripts

    def _entity_from_row(self, row: Dict[str, Any]) -> SemesterTranscript:
        return SemesterTranscript(
            id=row["id"],
            student_id=row["student_id"],
            semester_id=row["semester_id"],
            semester_name=row["semester_name"],
            semester_average=row["semester_average"],
            released_at=from_iso(row["released_at"]),
        )
