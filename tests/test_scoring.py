from decimal import Decimal
from fractions import Fraction

import pytest

from scholaris.core.entities import SlotMark, AssignmentGrade
from scholaris.core.enums import MarkStatus
from scholaris.core.exceptions import ValidationError
from scholaris.services.scoring import (
    round_half_up, SlotSummary, attendance_score, participation_score, assignment_score,
    exam_component, final_score, semester_average, CourseScore,
)


def marks(student_id, statuses, course_id="c1"):
    return [SlotMark(course_id, student_id, index, status) for index, status in statuses]


P, A = MarkStatus.PRESENT, MarkStatus.ABSENT


@pytest.mark.parametrize("value, expected", [
    (0.5, 1), (1.5, 2), (2.5, 3), (2.4999, 2), (Fraction(25, 2), 13), (Decimal("4.5"), 5), (7, 7),
])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected


def test_no_rows_scores_zero():
    summary = SlotSummary.from_marks([])
    assert not summary.has_rows
    assert attendance_score(summary, "s1") == 0


def test_slot_count_comes_from_whole_cohort():
    rows = marks("s1", [(i, P) for i in range(5)]) + marks("s2", [(9, A)])
    summary = SlotSummary.from_marks(rows)
    assert summary.slots == 10
    # 5 of 10 slots
    assert attendance_score(summary, "s1") == 10
    assert attendance_score(summary, "s2") == 0


def test_unrecorded_slots_are_not_absences():
    rows = marks("s1", [(0, P), (1, P)]) + marks("s2", [(1, P)])
    summary = SlotSummary.from_marks(rows)
    assert summary.slots == 2
    assert attendance_score(summary, "s1") == 20
    assert attendance_score(summary, "s2") == 10


def test_student_without_rows_in_active_course_scores_zero():
    summary = SlotSummary.from_marks(marks("s1", [(0, P)]))
    assert participation_score(summary, "nobody") == 0


def test_participation_rounds_half_up():
    # 5 of 12 slots is 4.17 out of 10; 3 of 4 is 7.5
    assert participation_score(SlotSummary.from_marks(
        marks("s1", [(i, P) for i in range(5)]) + marks("s2", [(11, P)])), "s1") == 4
    assert participation_score(SlotSummary.from_marks(
        marks("s1", [(0, P), (1, P), (2, P), (3, A)])), "s1") == 8


def test_malformed_lecture_index_is_rejected():
    with pytest.raises(ValidationError):
        SlotSummary.from_marks([SlotMark("c1", "s1", -1, P)])


def test_assignment_score_averages_graded_submissions():
    grades = [AssignmentGrade("s1", "c1", 70), AssignmentGrade("s1", "c1", 90), AssignmentGrade("s1", "c1", None)]
    assert assignment_score(grades) == 16


def test_assignment_score_caps_average_at_hundred():
    assert assignment_score([AssignmentGrade("s1", "c1", 130)]) == 20


def test_assignment_score_without_graded_submissions_is_zero():
    assert assignment_score([]) == 0
    assert assignment_score([AssignmentGrade("s1", "c1", None)]) == 0


@pytest.mark.parametrize("grade", [-1, "ninety"])
def test_assignment_score_rejects_bad_grades(grade):
    with pytest.raises(ValidationError):
        assignment_score([AssignmentGrade("s1", "c1", grade)])


def test_exam_component_clamps_and_keeps_none():
    assert exam_component(None) is None
    assert exam_component(62.0) == 50.0
    assert exam_component(-3) == 0.0
    assert exam_component(38) == 38.0


def test_final_score_treats_missing_exam_as_zero():
    assert final_score(16, 4, 16, None) == 36.0
    score = CourseScore("c1", attendance=16, participation=4, assignments=16, exam=40.0)
    assert score.final == 76.0
    assert score.percentage == score.final


def test_semester_average():
    assert semester_average([]) == 0.0
    assert semester_average([76.0, 50.0]) == 63.0
