"""
Enumerations and constants for the Scholaris pipeline.
"""

from enum import Enum


class QuestionType(Enum):
    """Closed set of exam question kinds."""
    SINGLE_CHOICE = "single_choice"
    TRUE_FALSE = "true_false"
    ESSAY = "essay"
    MATRIX = "matrix"
    
    @property
    def is_choice(self) -> bool:
        return self in (QuestionType.SINGLE_CHOICE, QuestionType.TRUE_FALSE)


class AttemptState(Enum):
    """Lifecycle of a student's exam attempt.

    ``NOT_STARTED`` is implicit: no attempt row exists.
    """
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


class ExamStatus(Enum):
    """Lifecycle of an exam."""
    DRAFT = "draft"
    PUBLISHED = "published"
    RESULTS_RELEASED = "results_released"


class MarkStatus(Enum):
    """A recorded attendance or participation mark.

    An unrecorded slot has no row at all and is never treated as absent.
    """
    PRESENT = "present"
    ABSENT = "absent"


class LedgerKind(Enum):
    """Which slot ledger a mark belongs to."""
    ATTENDANCE = "attendance"
    PARTICIPATION = "participation"


# Component maxima of a transcript course row; they sum to 100.
ATTENDANCE_MAX = 20
PARTICIPATION_MAX = 10
ASSIGNMENTS_MAX = 20
EXAM_MAX = 50

DEFAULT_EXAM_TOTAL_MARKS = EXAM_MAX
