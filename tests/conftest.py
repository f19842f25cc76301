from datetime import datetime, timedelta, timezone

import pytest

from scholaris.core.enums import QuestionType
from scholaris.persistence import SQLiteDatabase, MigrationManager, SQLiteAcademicLedger
from scholaris.services import ConcurrencyManager, ExamService, ReleaseService

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
EXAM_START = T0
EXAM_END = T0 + timedelta(hours=1)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(T0 + timedelta(minutes=1))


@pytest.fixture
def database(tmp_path):
    db = SQLiteDatabase(str(tmp_path / "scholaris.db"))
    MigrationManager(db).migrate_up()
    return db


@pytest.fixture
def ledger(database):
    return SQLiteAcademicLedger(database)


@pytest.fixture
def concurrency():
    manager = ConcurrencyManager(max_workers=4, lock_timeout=5.0)
    yield manager
    manager.cleanup()


@pytest.fixture
def exam_service(database, clock):
    return ExamService(database, clock=clock)


@pytest.fixture
def release_service(database, ledger, exam_service, concurrency, clock):
    return ReleaseService(
        database,
        enrollments=ledger,
        attendance=ledger,
        assignments=ledger,
        directory=ledger,
        exam_service=exam_service,
        concurrency_manager=concurrency,
        clock=clock,
    )


@pytest.fixture
def make_exam(exam_service):
    """Create an exam with a 10-mark choice question, a 20-mark matrix and a 20-mark essay."""

    def factory(course_id="cs101", semester_id="sem-1", publish=True, essay=True,
                start_at=EXAM_START, end_at=EXAM_END):
        exam = exam_service.create_exam(course_id, semester_id, "Midterm", start_at, end_at)
        choice = exam_service.add_question(
            exam.id, QuestionType.SINGLE_CHOICE, "2 + 2 = ?", 10,
            options=[("3", False), ("4", True), ("5", False)],
        )
        matrix = exam_service.add_question(
            exam.id, QuestionType.MATRIX, "Match literal to type", 20,
            matrix_rows=["'a'", "1", "1.0"],
            matrix_columns=["str", "int", "float"],
            matrix_answers={0: [0], 1: [1], 2: [2]},
        )
        questions = {"choice": choice, "matrix": matrix}
        if essay:
            questions["essay"] = exam_service.add_question(exam.id, QuestionType.ESSAY, "Explain recursion", 20)
        if publish:
            exam = exam_service.publish_exam(exam.id)
        return exam, questions

    return factory


def correct_option(question):
    return next(o.id for o in question.options if o.is_correct)


def wrong_option(question):
    return next(o.id for o in question.options if not o.is_correct)


def columns(question):
    return [o.id for o in question.options]
