"""
Database migration system for schema versioning.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..core.exceptions import PersistenceError, ValidationError
from .database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """Represents a database migration."""
    id: str
    name: str
    version: int
    up_sql: List[str]
    down_sql: List[str]
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EXAM_TABLES = Migration(
    id="0001-exam-tables",
    name="exam_tables",
    version=1,
    description="Exams, questions, options, attempts, answers and deadline exceptions",
    up_sql=[
        """
        CREATE TABLE exams (
            id TEXT PRIMARY KEY,
            course_id TEXT NOT NULL,
            semester_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            total_marks REAL NOT NULL DEFAULT 50,
            is_published INTEGER NOT NULL DEFAULT 0,
            is_results_released INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            CHECK (start_at < end_at)
        )
        """,
        "CREATE INDEX idx_exams_course_semester ON exams (course_id, semester_id)",
        """
        CREATE TABLE exam_questions (
            id TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL REFERENCES exams (id) ON DELETE CASCADE,
            question_type TEXT NOT NULL
                CHECK (question_type IN ('single_choice', 'true_false', 'essay', 'matrix')),
            text TEXT NOT NULL,
            marks REAL NOT NULL CHECK (marks >= 0),
            order_index INTEGER NOT NULL DEFAULT 0,
            matrix_rows TEXT,
            matrix_answers TEXT
        )
        """,
        """
        CREATE TABLE exam_options (
            id TEXT PRIMARY KEY,
            question_id TEXT NOT NULL REFERENCES exam_questions (id) ON DELETE CASCADE,
            text TEXT NOT NULL,
            is_correct INTEGER NOT NULL DEFAULT 0,
            order_index INTEGER NOT NULL DEFAULT 0
        )
        """,
        """
        CREATE TABLE exam_attempts (
            id TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL REFERENCES exams (id) ON DELETE CASCADE,
            student_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            submitted_at TEXT,
            total_score REAL,
            is_submitted INTEGER NOT NULL DEFAULT 0,
            UNIQUE (exam_id, student_id)
        )
        """,
        """
        CREATE TABLE exam_answers (
            id TEXT PRIMARY KEY,
            attempt_id TEXT NOT NULL REFERENCES exam_attempts (id) ON DELETE CASCADE,
            question_id TEXT NOT NULL REFERENCES exam_questions (id) ON DELETE CASCADE,
            selected_option_id TEXT,
            essay_text TEXT,
            matrix_selections TEXT,
            is_correct INTEGER,
            awarded_marks REAL,
            updated_at TEXT NOT NULL,
            UNIQUE (attempt_id, question_id),
            CHECK ((selected_option_id IS NOT NULL)
                   + (essay_text IS NOT NULL)
                   + (matrix_selections IS NOT NULL) <= 1)
        )
        """,
        """
        CREATE TABLE exam_exceptions (
            id TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL REFERENCES exams (id) ON DELETE CASCADE,
            student_id TEXT NOT NULL,
            extended_until TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (exam_id, student_id)
        )
        """,
    ],
    down_sql=[
        "DROP TABLE IF EXISTS exam_exceptions",
        "DROP TABLE IF EXISTS exam_answers",
        "DROP TABLE IF EXISTS exam_attempts",
        "DROP TABLE IF EXISTS exam_options",
        "DROP TABLE IF EXISTS exam_questions",
        "DROP TABLE IF EXISTS exams",
    ],
)

TRANSCRIPT_TABLES = Migration(
    id="0002-transcript-tables",
    name="transcript_tables",
    version=2,
    description="Released semester transcripts and their course rows",
    up_sql=[
        """
        CREATE TABLE semester_transcripts (
            id TEXT PRIMARY KEY,
            student_id TEXT NOT NULL,
            semester_id TEXT NOT NULL,
            semester_name TEXT NOT NULL,
            semester_average REAL NOT NULL,
            released_at TEXT NOT NULL,
            UNIQUE (student_id, semester_id)
        )
        """,
        "CREATE INDEX idx_transcripts_semester ON semester_transcripts (semester_id)",
        """
        CREATE TABLE transcript_courses (
            id TEXT PRIMARY KEY,
            transcript_id TEXT NOT NULL REFERENCES semester_transcripts (id) ON DELETE CASCADE,
            course_id TEXT NOT NULL,
            course_code TEXT NOT NULL,
            course_name TEXT NOT NULL,
            attendance_score INTEGER NOT NULL CHECK (attendance_score BETWEEN 0 AND 20),
            participation_score INTEGER NOT NULL CHECK (participation_score BETWEEN 0 AND 10),
            assignments_score INTEGER NOT NULL CHECK (assignments_score BETWEEN 0 AND 20),
            exam_score REAL CHECK (exam_score IS NULL OR exam_score BETWEEN 0 AND 50),
            final_score REAL NOT NULL CHECK (final_score BETWEEN 0 AND 100),
            percentage REAL NOT NULL,
            UNIQUE (transcript_id, course_id)
        )
        """,
    ],
    down_sql=[
        "DROP TABLE IF EXISTS transcript_courses",
        "DROP TABLE IF EXISTS semester_transcripts",
    ],
)

LEDGER_TABLES = Migration(
    id="0003-ledger-tables",
    name="ledger_tables",
    version=3,
    description="Local store for enrollments, slot marks, assignment grades and the course directory",
    up_sql=[
        """
        CREATE TABLE semesters (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE courses (
            id TEXT PRIMARY KEY,
            code TEXT NOT NULL,
            name TEXT NOT NULL,
            semester_id TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE enrollments (
            student_id TEXT NOT NULL,
            course_id TEXT NOT NULL,
            semester_id TEXT NOT NULL,
            PRIMARY KEY (student_id, course_id, semester_id)
        )
        """,
        """
        CREATE TABLE slot_marks (
            course_id TEXT NOT NULL,
            student_id TEXT NOT NULL,
            kind TEXT NOT NULL CHECK (kind IN ('attendance', 'participation')),
            lecture_index INTEGER NOT NULL CHECK (lecture_index >= 0),
            status TEXT NOT NULL CHECK (status IN ('present', 'absent')),
            PRIMARY KEY (course_id, student_id, kind, lecture_index)
        )
        """,
        """
        CREATE TABLE assignment_submissions (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL,
            student_id TEXT NOT NULL,
            course_id TEXT NOT NULL,
            grade REAL,
            UNIQUE (assignment_id, student_id)
        )
        """,
    ],
    down_sql=[
        "DROP TABLE IF EXISTS assignment_submissions",
        "DROP TABLE IF EXISTS slot_marks",
        "DROP TABLE IF EXISTS enrollments",
        "DROP TABLE IF EXISTS courses",
        "DROP TABLE IF EXISTS semesters",
    ],
)

BUILTIN_MIGRATIONS = [EXAM_TABLES, TRANSCRIPT_TABLES, LEDGER_TABLES]


class MigrationManager:
    """Manages database migrations and schema versioning."""

    def __init__(self, database: DatabaseManager, migrations: Optional[List[Migration]] = None):
        self._database = database
        self._migrations: Dict[str, Migration] = {}
        self._lock = threading.RLock()
        for migration in migrations if migrations is not None else BUILTIN_MIGRATIONS:
            self.register(migration)

    def register(self, migration: Migration) -> None:
        """Register a migration; versions must be unique."""
        with self._lock:
            for existing in self._migrations.values():
                if existing.version == migration.version and existing.id != migration.id:
                    raise ValidationError(
                        f"Migration version {migration.version} already used by {existing.name}"
                    )
            self._migrations[migration.id] = migration

    def _get_applied_migrations(self) -> Dict[str, str]:
        """Get applied migration IDs mapped to their names."""
        query = "SELECT id, name FROM migrations ORDER BY version"
        results = self._database.execute_query(query)
        return {row["id"]: row["name"] for row in results}

    def get_pending_migrations(self) -> List[Migration]:
        """Get migrations that haven't been applied yet."""
        with self._lock:
            applied = self._get_applied_migrations()
            return [
                migration
                for migration in sorted(self._migrations.values(), key=lambda m: m.version)
                if migration.id not in applied
            ]

    def current_version(self) -> int:
        results = self._database.execute_query("SELECT MAX(version) AS version FROM migrations")
        if not results or results[0]["version"] is None:
            return 0
        return results[0]["version"]

    def migrate_up(self) -> List[Migration]:
        """Apply every pending migration, one transaction each."""
        with self._lock:
            applied = []
            for migration in self.get_pending_migrations():
                try:
                    with self._database.transaction() as tx:
                        for statement in migration.up_sql:
                            tx.execute(statement)
                        tx.execute(
                            "INSERT INTO migrations (id, name, version, applied_at, description) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (migration.id, migration.name, migration.version,
                             datetime.now(timezone.utc).isoformat(), migration.description),
                        )
                except PersistenceError:
                    logger.error("Migration %s (v%d) failed", migration.name, migration.version)
                    raise
                logger.info("Applied migration %s (v%d)", migration.name, migration.version)
                applied.append(migration)
            return applied

    def migrate_down(self, target_version: int = 0) -> List[Migration]:
        """Roll back applied migrations above ``target_version``, newest first."""
        with self._lock:
            applied_ids = self._get_applied_migrations()
            rolled_back = []
            candidates = sorted(
                (m for m in self._migrations.values() if m.id in applied_ids and m.version > target_version),
                key=lambda m: m.version,
                reverse=True,
            )
            for migration in candidates:
                with self._database.transaction() as tx:
                    for statement in migration.down_sql:
                        tx.execute(statement)
                    tx.execute("DELETE FROM migrations WHERE id = ?", (migration.id,))
                logger.info("Rolled back migration %s (v%d)", migration.name, migration.version)
                rolled_back.append(migration)
            return rolled_back
