"""
Main entry point for the Scholaris platform.
"""

import json
import logging
import threading
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from .core.entities import ChoiceAnswer, EssayAnswer, MatrixAnswer, utcnow
from .core.enums import MarkStatus, LedgerKind, QuestionType
from .persistence import DatabaseFactory, MigrationManager, SQLiteAcademicLedger
from .services import ConcurrencyManager, GradingEngine, ExamService, ReleaseService
from .api.rest_api import ScholarisRestAPI

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "database_type": "sqlite",
    "database_config": {"database_path": "scholaris.db"},
    "max_workers": 10,
    "lock_timeout": 30.0,
    "log_level": "INFO",
}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Merge a JSON config file over :data:`DEFAULT_CONFIG`."""
    config = dict(DEFAULT_CONFIG)
    config["database_config"] = dict(DEFAULT_CONFIG["database_config"])
    if path:
        with open(path, 'r') as f:
            loaded = json.load(f)
        database_config = loaded.pop("database_config", None) or {}
        config.update(loaded)
        config["database_config"].update(database_config)
    return config


class ScholarisPlatform:
    """Main platform class that wires storage, services and the REST app."""

    def __init__(self, config: Optional[dict] = None):
        self._config = config or load_config()
        self._database = None
        self._migration_manager = None
        self._ledger = None
        self._concurrency_manager = None
        self._exam_service = None
        self._release_service = None
        self._rest_app = None
        self._rest_thread = None

        # Initialize platform
        self._initialize_platform()

    @property
    def exam_service(self) -> ExamService:
        return self._exam_service

    @property
    def release_service(self) -> ReleaseService:
        return self._release_service

    @property
    def ledger(self) -> SQLiteAcademicLedger:
        return self._ledger

    @property
    def rest_app(self) -> ScholarisRestAPI:
        return self._rest_app

    def _initialize_platform(self):
        """Initialize the platform with all services."""
        logger.info("Initializing Scholaris platform...")

        db_type = self._config.get('database_type', 'sqlite')
        db_config = self._config.get('database_config', {})
        self._database = DatabaseFactory.create_database(db_type, **db_config)
        logger.info("Database initialized: %s", db_type)

        self._migration_manager = MigrationManager(self._database)
        applied = self._migration_manager.migrate_up()
        logger.info("Schema at version %d (%d migrations applied)",
                    self._migration_manager.current_version(), len(applied))

        self._ledger = SQLiteAcademicLedger(self._database)

        self._concurrency_manager = ConcurrencyManager(
            max_workers=self._config.get('max_workers', 10),
            lock_timeout=self._config.get('lock_timeout', 30.0),
        )

        self._exam_service = ExamService(self._database, GradingEngine())
        self._release_service = ReleaseService(
            self._database,
            enrollments=self._ledger,
            attendance=self._ledger,
            assignments=self._ledger,
            directory=self._ledger,
            exam_service=self._exam_service,
            concurrency_manager=self._concurrency_manager,
        )
        logger.info("Services initialized")

        self._rest_app = ScholarisRestAPI(self._exam_service, self._release_service)
        logger.info("Scholaris platform initialized")

    def start_rest_server(self, host: str = "0.0.0.0", port: int = 8000):
        """Start the REST server."""
        if self._rest_thread is not None:
            logger.warning("REST server already running")
            return

        import uvicorn

        def run_server():
            uvicorn.run(
                self._rest_app.app,
                host=host,
                port=port,
                log_level=str(self._config.get('log_level', 'info')).lower()
            )

        # Start server in a separate thread
        self._rest_thread = threading.Thread(target=run_server, daemon=True)
        self._rest_thread.start()

        logger.info("REST server started on %s:%d (docs at /docs)", host, port)

    def stop_platform(self):
        """Stop the platform."""
        if self._concurrency_manager:
            self._concurrency_manager.cleanup()
        logger.info("Scholaris platform stopped")

    def create_sample_data(self, semester_id: str = "2026-fall") -> str:
        """Seed one semester with a course, two students, ledgers and a finished exam."""
        ledger = self._ledger
        ledger.add_semester(semester_id, "Fall 2026")
        ledger.add_course("cs101", "CS101", "Introduction to Programming", semester_id)
        for student_id in ("s-alice", "s-bob"):
            ledger.enroll(student_id, "cs101", semester_id)

        for index in range(10):
            ledger.record_mark("cs101", "s-alice", index, MarkStatus.PRESENT)
            ledger.record_mark("cs101", "s-bob", index, MarkStatus.PRESENT if index % 2 else MarkStatus.ABSENT)
        for index in range(5):
            ledger.record_mark("cs101", "s-alice", index, MarkStatus.PRESENT, LedgerKind.PARTICIPATION)
        ledger.record_submission("hw1", "s-alice", "cs101", 92)
        ledger.record_submission("hw1", "s-bob", "cs101", 71)
        ledger.record_submission("hw2", "s-bob", "cs101")

        now = utcnow()
        exams = self._exam_service
        exam = exams.create_exam("cs101", semester_id, "Midterm", now - timedelta(minutes=5), now + timedelta(hours=1))
        choice = exams.add_question(exam.id, QuestionType.SINGLE_CHOICE, "2 + 2 = ?", 10,
                                    options=[("3", False), ("4", True), ("5", False)])
        matrix = exams.add_question(exam.id, QuestionType.MATRIX, "Match each literal to its type", 20,
                                    matrix_rows=["'a'", "1", "1.0"], matrix_columns=["str", "int", "float"],
                                    matrix_answers={0: [0], 1: [1], 2: [2]})
        essay = exams.add_question(exam.id, QuestionType.ESSAY, "Explain recursion", 20)
        exams.publish_exam(exam.id)

        correct = next(o.id for o in choice.options if o.is_correct)
        columns = [o.id for o in matrix.options]
        attempt = exams.create_or_get_attempt(exam.id, "s-alice")
        exams.save_answer(attempt.id, choice.id, ChoiceAnswer(correct))
        exams.submit_attempt(attempt.id, {
            matrix.id: MatrixAnswer.from_lists({"0": [columns[0]], "1": [columns[1]], "2": [columns[1]]}),
            essay.id: EssayAnswer("A function that calls itself."),
        })
        essay_answer = next(a for a in exams.get_answers(attempt.id) if a.question_id == essay.id)
        exams.grade_essay_answer(essay_answer.id, 15)
        exams.release_exam_results(exam.id)
        return semester_id

    def run_demo(self):
        """Run a demonstration of the platform."""
        logger.info("Running Scholaris demonstration...")
        semester_id = self.create_sample_data()

        summary = self._release_service.release_semester(semester_id)
        logger.info("Release summary: %s", summary.to_dict())
        for student_id in ("s-alice", "s-bob"):
            for transcript in self._release_service.get_transcript(student_id):
                for course in transcript.courses:
                    logger.info(
                        "%s %s %s: attendance %s, participation %s, assignments %s, exam %s, final %s",
                        student_id, transcript.semester_name, course.course_code, course.attendance_score,
                        course.participation_score, course.assignments_score, course.exam_score,
                        course.final_score,
                    )
        logger.info("Demo completed")


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Scholaris Assessment & Academic Record Platform")
    parser.add_argument("--rest-port", type=int, default=8000, help="REST server port")
    parser.add_argument("--demo", action="store_true", help="Run demo mode")
    parser.add_argument("--config", type=str, help="Configuration file path")

    args = parser.parse_args()

    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    platform = ScholarisPlatform(config)

    try:
        if args.demo:
            platform.run_demo()
            platform.stop_platform()
        else:
            platform.start_rest_server(port=args.rest_port)

            # Keep running
            logger.info("Platform is running. Press Ctrl+C to stop.")
            while True:
                time.sleep(1)

    except KeyboardInterrupt:
        logger.info("Shutting down...")
        platform.stop_platform()


if __name__ == "__main__":
    main()
