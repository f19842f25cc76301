"""
SQLite store for the collaborator data the release engine reads.

The pipeline only ever reads through the interfaces in
:mod:`scholaris.core.interfaces`; the write methods here exist so the
surrounding portal (and the tests) can feed the store.
"""

from typing import List, Optional

from ..core.entities import Enrollment, SlotMark, AssignmentGrade, CourseInfo, SemesterInfo, new_id
from ..core.enums import LedgerKind, MarkStatus
from ..core.exceptions import ValidationError
from ..core.interfaces import EnrollmentFeed, AttendanceLedger, AssignmentLedger, CourseDirectory
from .database import DatabaseManager
from .repositories import BaseRepository


class SQLiteAcademicLedger(BaseRepository, EnrollmentFeed, AttendanceLedger, AssignmentLedger, CourseDirectory):
    """Enrollment feed, slot ledgers, assignment grades and course directory in one store."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database)

    # Directory

    def add_semester(self, semester_id: str, name: str) -> SemesterInfo:
        self._execute(
            "INSERT INTO semesters (id, name) VALUES (?, ?) ON CONFLICT (id) DO UPDATE SET name = excluded.name",
            (semester_id, name),
        )
        return SemesterInfo(id=semester_id, name=name)

    def add_course(self, course_id: str, code: str, name: str, semester_id: str) -> CourseInfo:
        self._execute(
            """
            INSERT INTO courses (id, code, name, semester_id) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET code = excluded.code, name = excluded.name,
                                           semester_id = excluded.semester_id
            """,
            (course_id, code, name, semester_id),
        )
        return CourseInfo(id=course_id, code=code, name=name, semester_id=semester_id)

    def delete_course(self, course_id: str) -> bool:
        return self._execute("DELETE FROM courses WHERE id = ?", (course_id,)) > 0

    def get_course(self, course_id: str) -> Optional[CourseInfo]:
        rows = self._query("SELECT * FROM courses WHERE id = ?", (course_id,))
        if not rows:
            return None
        row = rows[0]
        return CourseInfo(id=row["id"], code=row["code"], name=row["name"], semester_id=row["semester_id"])

    def get_semester(self, semester_id: str) -> Optional[SemesterInfo]:
        rows = self._query("SELECT * FROM semesters WHERE id = ?", (semester_id,))
        if not rows:
            return None
        return SemesterInfo(id=rows[0]["id"], name=rows[0]["name"])

    # Enrollment feed

    def enroll(self, student_id: str, course_id: str, semester_id: str) -> Enrollment:
        self._execute(
            """
            INSERT INTO enrollments (student_id, course_id, semester_id) VALUES (?, ?, ?)
            ON CONFLICT (student_id, course_id, semester_id) DO NOTHING
            """,
            (student_id, course_id, semester_id),
        )
        return Enrollment(student_id=student_id, course_id=course_id, semester_id=semester_id)

    def unenroll(self, student_id: str, course_id: str, semester_id: str) -> bool:
        return self._execute(
            "DELETE FROM enrollments WHERE student_id = ? AND course_id = ? AND semester_id = ?",
            (student_id, course_id, semester_id),
        ) > 0

    def get_enrollments(self, semester_id: str) -> List[Enrollment]:
        rows = self._query(
            "SELECT * FROM enrollments WHERE semester_id = ? ORDER BY student_id, course_id", (semester_id,)
        )
        return [
            Enrollment(student_id=row["student_id"], course_id=row["course_id"], semester_id=row["semester_id"])
            for row in rows
        ]

    # Slot ledgers

    def record_mark(self, course_id: str, student_id: str, lecture_index: int,
                    status: MarkStatus, kind: LedgerKind = LedgerKind.ATTENDANCE) -> SlotMark:
        """Record or overwrite one attendance/participation mark."""
        if lecture_index < 0:
            raise ValidationError(f"Lecture index must be non-negative, got {lecture_index}")
        self._execute(
            """
            INSERT INTO slot_marks (course_id, student_id, kind, lecture_index, status)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (course_id, student_id, kind, lecture_index) DO UPDATE SET status = excluded.status
            """,
            (course_id, student_id, kind.value, lecture_index, status.value),
        )
        return SlotMark(course_id=course_id, student_id=student_id, lecture_index=lecture_index, status=status)

    def clear_mark(self, course_id: str, student_id: str, lecture_index: int,
                   kind: LedgerKind = LedgerKind.ATTENDANCE) -> bool:
        """Return a slot to the unrecorded state."""
        return self._execute(
            "DELETE FROM slot_marks WHERE course_id = ? AND student_id = ? AND kind = ? AND lecture_index = ?",
            (course_id, student_id, kind.value, lecture_index),
        ) > 0

    def get_marks(self, course_id: str, kind: LedgerKind) -> List[SlotMark]:
        rows = self._query(
            """
            SELECT * FROM slot_marks WHERE course_id = ? AND kind = ?
            ORDER BY student_id, lecture_index
            """,
            (course_id, kind.value),
        )
        return [
            SlotMark(course_id=row["course_id"], student_id=row["student_id"],
                     lecture_index=row["lecture_index"], status=MarkStatus(row["status"]))
            for row in rows
        ]

    # Assignment grades

    def record_submission(self, assignment_id: str, student_id: str, course_id: str,
                          grade: Optional[float] = None) -> AssignmentGrade:
        self._execute(
            """
            INSERT INTO assignment_submissions (id, assignment_id, student_id, course_id, grade)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (assignment_id, student_id) DO UPDATE SET grade = excluded.grade
            """,
            (new_id(), assignment_id, student_id, course_id, grade),
        )
        return AssignmentGrade(student_id=student_id, course_id=course_id, grade=grade)

    def get_grades(self, student_id: str, course_id: str) -> List[AssignmentGrade]:
        rows = self._query(
            """
            SELECT * FROM assignment_submissions WHERE student_id = ? AND course_id = ?
            ORDER BY assignment_id
            """,
            (student_id, course_id),
        )
        return [
            AssignmentGrade(student_id=row["student_id"], course_id=row["course_id"], grade=row["grade"])
            for row in rows
        ]
