"""
Services module containing the exam subsystem and the release engine.
"""

from .concurrency_manager import ConcurrencyManager, LockType, LockInfo
from .grading_engine import GradingEngine, GradeOutcome
from .exam_service import ExamService, AttemptResult
from .release_service import ReleaseService, ReleaseSummary, StudentReleaseResult

__all__ = [
    "ConcurrencyManager",
    "LockType",
    "LockInfo",
    "GradingEngine",
    "GradeOutcome",
    "ExamService",
    "AttemptResult",
    "ReleaseService",
    "ReleaseSummary",
    "StudentReleaseResult",
]
