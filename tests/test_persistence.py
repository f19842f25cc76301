import pytest

from scholaris.core.enums import MarkStatus, LedgerKind
from scholaris.core.exceptions import ConfigurationError, PersistenceError, StateError
from scholaris.persistence import (
    DatabaseFactory, SQLiteDatabase, MigrationManager, Migration, BUILTIN_MIGRATIONS,
)


def test_factory_rejects_unknown_backend(tmp_path):
    with pytest.raises(ConfigurationError):
        DatabaseFactory.create_database("oracle", database_path=str(tmp_path / "x.db"))


def test_in_memory_database_is_refused():
    with pytest.raises(ConfigurationError):
        SQLiteDatabase(":memory:")


def test_migrations_create_schema_once(tmp_path):
    db = SQLiteDatabase(str(tmp_path / "fresh.db"))
    manager = MigrationManager(db)
    assert manager.current_version() == 0

    applied = manager.migrate_up()
    assert [m.version for m in applied] == [m.version for m in BUILTIN_MIGRATIONS]
    assert manager.current_version() == BUILTIN_MIGRATIONS[-1].version
    assert manager.migrate_up() == []
    for table in ("exams", "exam_attempts", "exam_answers", "semester_transcripts", "transcript_courses",
                  "enrollments", "slot_marks"):
        assert db.table_exists(table)


def test_migrate_down_drops_newer_tables(database):
    manager = MigrationManager(database)
    rolled_back = manager.migrate_down(target_version=1)
    assert [m.version for m in rolled_back] == [3, 2]
    assert database.table_exists("exams")
    assert not database.table_exists("semester_transcripts")
    assert manager.current_version() == 1


def test_failed_migration_is_not_recorded(database):
    broken = Migration(id="9999-broken", name="broken", version=99, up_sql=["CREATE TABLE exams (id TEXT)"], down_sql=[])
    manager = MigrationManager(database, BUILTIN_MIGRATIONS + [broken])
    with pytest.raises(PersistenceError):
        manager.migrate_up()
    assert manager.current_version() == BUILTIN_MIGRATIONS[-1].version


def test_transaction_rolls_back_and_reraises_domain_errors(database):
    with pytest.raises(StateError):
        with database.transaction() as tx:
            tx.execute("INSERT INTO semesters (id, name) VALUES (?, ?)", ("sem-x", "X"))
            raise StateError("abort")
    assert database.execute_query("SELECT * FROM semesters") == []


def test_constraint_violation_becomes_persistence_error(database):
    database.execute_update("INSERT INTO semesters (id, name) VALUES ('s', 'S')")
    with pytest.raises(PersistenceError):
        database.execute_update("INSERT INTO semesters (id, name) VALUES ('s', 'again')")


def test_ledger_round_trip(ledger):
    ledger.add_semester("sem-1", "Spring")
    ledger.add_course("cs101", "CS101", "Programming", "sem-1")
    ledger.enroll("s1", "cs101", "sem-1")
    ledger.enroll("s1", "cs101", "sem-1")
    ledger.record_mark("cs101", "s1", 0, MarkStatus.ABSENT)
    ledger.record_mark("cs101", "s1", 0, MarkStatus.PRESENT)
    ledger.record_mark("cs101", "s1", 1, MarkStatus.PRESENT, LedgerKind.PARTICIPATION)
    ledger.record_submission("hw1", "s1", "cs101", 88)

    assert [e.course_id for e in ledger.get_enrollments("sem-1")] == ["cs101"]
    [mark] = ledger.get_marks("cs101", LedgerKind.ATTENDANCE)
    assert mark.status is MarkStatus.PRESENT
    assert [m.lecture_index for m in ledger.get_marks("cs101", LedgerKind.PARTICIPATION)] == [1]
    assert [g.grade for g in ledger.get_grades("s1", "cs101")] == [88]
    assert ledger.get_semester("sem-1").name == "Spring"
    assert ledger.get_course("nope") is None

    assert ledger.clear_mark("cs101", "s1", 0)
    assert ledger.get_marks("cs101", LedgerKind.ATTENDANCE) == []


def test_enrollment_key_includes_semester(ledger):
    ledger.add_semester("sem-1", "Spring")
    ledger.add_semester("sem-2", "Autumn")
    ledger.add_course("lab", "LAB", "Lab", "sem-1")
    ledger.enroll("s1", "lab", "sem-1")
    ledger.enroll("s1", "lab", "sem-2")

    assert [e.semester_id for e in ledger.get_enrollments("sem-1")] == ["sem-1"]
    assert [e.semester_id for e in ledger.get_enrollments("sem-2")] == ["sem-2"]

    assert ledger.unenroll("s1", "lab", "sem-1")
    assert not ledger.unenroll("s1", "lab", "sem-1")
    assert ledger.get_enrollments("sem-1") == []
    assert len(ledger.get_enrollments("sem-2")) == 1


def test_read_transaction_sees_one_snapshot(database):
    database.execute_update("INSERT INTO semesters (id, name) VALUES ('a', 'A')")
    with database.read_transaction() as tx:
        assert len(tx.query("SELECT * FROM semesters")) == 1
        database.execute_update("INSERT INTO semesters (id, name) VALUES ('b', 'B')")
        assert len(tx.query("SELECT * FROM semesters")) == 1
    assert len(database.execute_query("SELECT * FROM semesters")) == 2
