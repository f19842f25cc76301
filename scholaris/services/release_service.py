"""
Semester release: aggregate every enrolled student's course scores into an
immutable transcript snapshot.

A release is explicit and idempotent. Re-running it regenerates each
student's transcript in place and drops those of students no longer
enrolled; un-releasing deletes the semester's transcripts. Both serialize
on the semester's advisory lock, and students are processed independently
so one bad record does not block the rest.
"""

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.entities import SemesterTranscript, TranscriptCourse, CourseInfo, utcnow
from ..core.enums import LedgerKind
from ..core.exceptions import ValidationError, NotFoundError, PersistenceError
from ..core.interfaces import EnrollmentFeed, AttendanceLedger, AssignmentLedger, CourseDirectory
from ..persistence.database import DatabaseManager
from ..persistence.repositories import ExamRepository, TranscriptRepository
from .concurrency_manager import ConcurrencyManager, LockType
from .exam_service import ExamService, as_utc
from .scoring import (
    SlotSummary, CourseScore, attendance_score, participation_score, assignment_score,
    exam_component, semester_average,
)

logger = logging.getLogger(__name__)


@dataclass
class StudentReleaseResult:
    """Outcome of one student within a release run."""
    student_id: str
    success: bool
    transcript_id: Optional[str] = None
    course_count: int = 0
    semester_average: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ReleaseSummary:
    """Outcome of a whole release run."""
    semester_id: str
    semester_name: str
    released_at: datetime
    results: List[StudentReleaseResult] = field(default_factory=list)

    @property
    def released(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> List[StudentReleaseResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "semester_id": self.semester_id,
            "semester_name": self.semester_name,
            "released_at": self.released_at.isoformat(),
            "released": self.released,
            "failed": len(self.failed),
            "results": [asdict(r) for r in self.results],
        }


class _CourseContext:
    """Cohort-wide inputs of one course, read once per release run.

    A malformed slot ledger leaves ``error`` set; it is reported against
    every student of the course instead of aborting the run.
    """

    def __init__(self, info: CourseInfo, attendance: Optional[SlotSummary] = None,
                 participation: Optional[SlotSummary] = None, exam_id: Optional[str] = None,
                 error: Optional[str] = None):
        self.info = info
        self.attendance = attendance
        self.participation = participation
        self.exam_id = exam_id
        self.error = error


class ReleaseService:
    """Aggregation engine and sole writer of the transcript store."""

    def __init__(self, database: DatabaseManager, enrollments: EnrollmentFeed,
                 attendance: AttendanceLedger, assignments: AssignmentLedger,
                 directory: CourseDirectory, exam_service: ExamService,
                 concurrency_manager: ConcurrencyManager,
                 clock: Optional[Callable[[], datetime]] = None):
        self._database = database
        self._enrollments = enrollments
        self._attendance = attendance
        self._assignments = assignments
        self._directory = directory
        self._exam_service = exam_service
        self._concurrency = concurrency_manager
        self._clock = clock or utcnow

        self._exams = ExamRepository(database)
        self._transcripts = TranscriptRepository(database)

    @staticmethod
    def _lock_name(semester_id: str) -> str:
        return f"semester:{semester_id}"

    def release_semester(self, semester_id: str, semester_name: Optional[str] = None) -> ReleaseSummary:
        """Regenerate the transcript of every student enrolled in the semester.

        Per-student data problems are logged and reported in the summary;
        lock timeouts and failures reading the cohort-wide inputs propagate.
        """
        if not semester_id:
            raise ValidationError("semester_id is required")

        with self._concurrency.lock(self._lock_name(semester_id), LockType.WRITE):
            name = semester_name or self._resolve_semester_name(semester_id)
            released_at = as_utc(self._clock())
            logger.info("Releasing semester %s (%s)", semester_id, name)

            by_student = self._group_enrollments(semester_id)
            contexts: Dict[str, _CourseContext] = {}
            for course_ids in by_student.values():
                for course_id in course_ids:
                    if course_id not in contexts:
                        contexts[course_id] = self._load_course(course_id, semester_id)

            def release_one(student_id: str) -> StudentReleaseResult:
                return self._release_student(student_id, semester_id, name, released_at,
                                             [contexts[c] for c in by_student[student_id]])

            results = self._concurrency.map_bounded(release_one, list(by_student))

            with self._database.transaction() as tx:
                dropped = self._transcripts.delete_semester_except(semester_id, list(by_student), tx)
            if dropped:
                logger.info("Removed %d transcripts of students no longer enrolled in semester %s",
                            dropped, semester_id)

        summary = ReleaseSummary(semester_id=semester_id, semester_name=name,
                                 released_at=released_at, results=results)
        logger.info("Released semester %s: %d transcripts written, %d failed",
                    semester_id, summary.released, len(summary.failed))
        return summary

    def _release_student(self, student_id: str, semester_id: str, semester_name: str,
                         released_at: datetime, contexts: List["_CourseContext"]) -> StudentReleaseResult:
        try:
            transcript = self._build_transcript(student_id, semester_id, semester_name, released_at, contexts)
            with self._database.transaction() as tx:
                self._transcripts.replace_for_student(transcript, tx)
        except (ValidationError, NotFoundError, PersistenceError) as e:
            logger.error("Release of semester %s failed for student %s: %s", semester_id, student_id, e.message)
            return StudentReleaseResult(student_id=student_id, success=False, error=e.message)
        except Exception as e:
            logger.exception("Release of semester %s failed for student %s", semester_id, student_id)
            return StudentReleaseResult(student_id=student_id, success=False, error=str(e))
        return StudentReleaseResult(
            student_id=student_id,
            success=True,
            transcript_id=transcript.id,
            course_count=len(transcript.courses),
            semester_average=transcript.semester_average,
        )

    def unrelease_semester(self, semester_id: str) -> int:
        """Delete every transcript of the semester; returns how many were removed."""
        with self._concurrency.lock(self._lock_name(semester_id), LockType.WRITE):
            with self._database.transaction() as tx:
                deleted = self._transcripts.delete_semester(semester_id, tx)
        logger.info("Un-released semester %s (%d transcripts removed)", semester_id, deleted)
        return deleted

    def get_transcript(self, student_id: str) -> List[SemesterTranscript]:
        """Every released semester of a student, oldest release first."""
        return self._transcripts.find_by_student(student_id)

    def get_semester_transcript(self, student_id: str, semester_id: str) -> SemesterTranscript:
        transcript = self._transcripts.find_one(student_id, semester_id)
        if transcript is None:
            raise NotFoundError(f"No released transcript for student {student_id} in semester {semester_id}")
        return transcript

    def is_semester_released(self, semester_id: str) -> bool:
        return self._transcripts.count_for_semester(semester_id) > 0

    def cumulative_average(self, student_id: str) -> float:
        """Mean final score over every released course row of the student."""
        finals = [course.final_score
                  for transcript in self.get_transcript(student_id)
                  for course in transcript.courses]
        return semester_average(finals)

    def preview_student(self, semester_id: str, student_id: str) -> SemesterTranscript:
        """Compute a student's transcript without storing it."""
        course_ids = self._group_enrollments(semester_id).get(student_id)
        if not course_ids:
            raise NotFoundError(f"Student {student_id} has no enrollments in semester {semester_id}")
        contexts = [self._load_course(course_id, semester_id) for course_id in course_ids]
        return self._build_transcript(student_id, semester_id, self._resolve_semester_name(semester_id),
                                      as_utc(self._clock()), contexts)

    # Aggregation

    def _resolve_semester_name(self, semester_id: str) -> str:
        semester = self._directory.get_semester(semester_id)
        if semester is None:
            raise NotFoundError(f"Semester {semester_id} not found", details={"semester_id": semester_id})
        return semester.name

    def _group_enrollments(self, semester_id: str) -> "OrderedDict[str, List[str]]":
        by_student: "OrderedDict[str, List[str]]" = OrderedDict()
        for enrollment in self._enrollments.get_enrollments(semester_id):
            courses = by_student.setdefault(enrollment.student_id, [])
            if enrollment.course_id not in courses:
                courses.append(enrollment.course_id)
        return by_student

    def _load_course(self, course_id: str, semester_id: str) -> Optional[_CourseContext]:
        """Read a course's cohort-wide ledgers; None when the course is gone."""
        info = self._directory.get_course(course_id)
        if info is None:
            return None
        latest = self._exams.find_latest_released(course_id, semester_id)
        context = _CourseContext(info=info, exam_id=latest.id if latest is not None else None)
        try:
            context.attendance = SlotSummary.from_marks(
                self._attendance.get_marks(course_id, LedgerKind.ATTENDANCE))
            context.participation = SlotSummary.from_marks(
                self._attendance.get_marks(course_id, LedgerKind.PARTICIPATION))
        except ValidationError as e:
            logger.warning("Course %s has a malformed slot ledger: %s", course_id, e.message)
            context.error = e.message
        return context

    def _build_transcript(self, student_id: str, semester_id: str, semester_name: str,
                          released_at: datetime, contexts: List[Optional[_CourseContext]]) -> SemesterTranscript:
        courses: List[TranscriptCourse] = []
        for context in contexts:
            if context is None:
                raise NotFoundError(f"A course of student {student_id} is missing from the directory")
            score = self._score_course(student_id, context)
            courses.append(TranscriptCourse(
                course_id=context.info.id,
                course_code=context.info.code,
                course_name=context.info.name,
                attendance_score=score.attendance,
                participation_score=score.participation,
                assignments_score=score.assignments,
                exam_score=score.exam,
                final_score=score.final,
                percentage=score.percentage,
            ))
        courses.sort(key=lambda c: (c.course_code, c.course_id))
        return SemesterTranscript(
            student_id=student_id,
            semester_id=semester_id,
            semester_name=semester_name,
            semester_average=semester_average(c.final_score for c in courses),
            released_at=released_at,
            courses=courses,
        )

    def _score_course(self, student_id: str, context: _CourseContext) -> CourseScore:
        course_id = context.info.id
        if context.error is not None:
            raise ValidationError(context.error, details={"course_id": course_id})
        exam = None
        if context.exam_id is not None:
            exam = exam_component(self._exam_service.released_score(context.exam_id, student_id))
        return CourseScore(
            course_id=course_id,
            attendance=attendance_score(context.attendance, student_id),
            participation=participation_score(context.participation, student_id),
            assignments=assignment_score(self._assignments.get_grades(student_id, course_id)),
            exam=exam,
        )

