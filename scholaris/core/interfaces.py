"""
Read contracts of the external collaborators the pipeline consumes.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .entities import Enrollment, SlotMark, AssignmentGrade, CourseInfo, SemesterInfo
from .enums import LedgerKind


class EnrollmentFeed(ABC):
    """Source of (student, course, semester) enrollment tuples."""
    
    @abstractmethod
    def get_enrollments(self, semester_id: str) -> List[Enrollment]:
        """Get every enrollment of a semester."""
        pass


class AttendanceLedger(ABC):
    """Per-course, per-student, per-slot marks."""
    
    @abstractmethod
    def get_marks(self, course_id: str, kind: LedgerKind) -> List[SlotMark]:
        """Get every recorded mark of a course for one ledger kind."""
        pass


class AssignmentLedger(ABC):
    """Assignment submissions with optional grades."""
    
    @abstractmethod
    def get_grades(self, student_id: str, course_id: str) -> List[AssignmentGrade]:
        """Get a student's submissions in a course, graded or not."""
        pass


class CourseDirectory(ABC):
    """Resolves display names and codes used for snapshots."""
    
    @abstractmethod
    def get_course(self, course_id: str) -> Optional[CourseInfo]:
        """Get a course by ID."""
        pass
    
    @abstractmethod
    def get_semester(self, semester_id: str) -> Optional[SemesterInfo]:
        """Get a semester by ID."""
        pass
