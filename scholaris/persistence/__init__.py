"""
Persistence module for data storage and schema management.
"""

from .database import DatabaseManager, SQLiteDatabase, DatabaseFactory, Transaction
from .migrations import MigrationManager, Migration, BUILTIN_MIGRATIONS
from .repositories import (
    ExamRepository, QuestionRepository, AttemptRepository,
    AnswerRepository, ExceptionRepository, TranscriptRepository
)
from .ledgers import SQLiteAcademicLedger

__all__ = [
    "DatabaseManager",
    "SQLiteDatabase",
    "DatabaseFactory",
    "Transaction",
    "MigrationManager",
    "Migration",
    "BUILTIN_MIGRATIONS",
    "ExamRepository",
    "QuestionRepository",
    "AttemptRepository",
    "AnswerRepository",
    "ExceptionRepository",
    "TranscriptRepository",
    "SQLiteAcademicLedger",
]
