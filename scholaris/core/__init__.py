"""
Core module containing the domain records, contracts and error taxonomy.
"""

from .entities import *
from .interfaces import *
from .exceptions import *
from .enums import *

__all__ = [
    # Entities
    "Exam",
    "ExamQuestion",
    "ExamOption",
    "ExamAttempt",
    "ExamAnswer",
    "ExamException",
    "SemesterTranscript",
    "TranscriptCourse",
    "ChoiceAnswer",
    "EssayAnswer",
    "MatrixAnswer",
    "AnswerValue",
    "Enrollment",
    "SlotMark",
    "AssignmentGrade",
    "CourseInfo",
    "SemesterInfo",
    
    # Interfaces
    "EnrollmentFeed",
    "AttendanceLedger",
    "AssignmentLedger",
    "CourseDirectory",
    
    # Enums
    "QuestionType",
    "AttemptState",
    "ExamStatus",
    "MarkStatus",
    "LedgerKind",
    
    # Exceptions
    "ScholarisException",
    "ValidationError",
    "StateError",
    "OutOfWindowError",
    "NotFoundError",
    "PersistenceError",
    "ConcurrencyError",
    "ConfigurationError",
]
