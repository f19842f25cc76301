"""
Numeric policy of the semester release.

All rounding is round-half-up on exact decimal values, applied once per
component.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from fractions import Fraction
from numbers import Real
from typing import Dict, Iterable, List, Optional, Union

from ..core.entities import SlotMark, AssignmentGrade
from ..core.enums import (
    MarkStatus, ATTENDANCE_MAX, PARTICIPATION_MAX, ASSIGNMENTS_MAX, EXAM_MAX,
)
from ..core.exceptions import ValidationError

Number = Union[int, float, Decimal, Fraction]


def to_decimal(value: Number) -> Decimal:
    """Exact-as-written decimal for ints, floats, Decimals and Fractions."""
    if isinstance(value, bool):
        raise TypeError("booleans are not scores")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Fraction):
        return Decimal(value.numerator) / Decimal(value.denominator)
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_half_up(value: Number) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class SlotSummary:
    """Cohort-wide view of one course's attendance or participation ledger.

    ``slots`` is the highest lecture index recorded for anyone in the
    course plus one, floored at 1. A course with no rows at all has
    ``has_rows`` False and scores every student 0.
    """
    slots: int
    present_by_student: Dict[str, int] = field(default_factory=dict)
    has_rows: bool = True

    @classmethod
    def from_marks(cls, marks: Iterable[SlotMark]) -> "SlotSummary":
        marks = list(marks)
        if not marks:
            return cls(slots=1, has_rows=False)
        present: Dict[str, int] = {}
        highest = -1
        for mark in marks:
            if not isinstance(mark.lecture_index, int) or mark.lecture_index < 0:
                raise ValidationError(
                    f"Malformed lecture index {mark.lecture_index!r} for student {mark.student_id}"
                )
            highest = max(highest, mark.lecture_index)
            if mark.status is MarkStatus.PRESENT:
                present[mark.student_id] = present.get(mark.student_id, 0) + 1
        return cls(slots=max(highest + 1, 1), present_by_student=present)

    def score(self, student_id: str, maximum: int) -> int:
        if not self.has_rows:
            return 0
        present = min(self.present_by_student.get(student_id, 0), self.slots)
        return round_half_up(Fraction(present, self.slots) * maximum)


def attendance_score(summary: SlotSummary, student_id: str) -> int:
    return summary.score(student_id, ATTENDANCE_MAX)


def participation_score(summary: SlotSummary, student_id: str) -> int:
    return summary.score(student_id, PARTICIPATION_MAX)


def assignment_score(grades: Iterable[AssignmentGrade]) -> int:
    """``round(min(avg, 100) / 100 * 20)`` over graded submissions, else 0."""
    values: List[Decimal] = []
    for record in grades:
        if record.grade is None:
            continue
        if isinstance(record.grade, bool) or not isinstance(record.grade, Real):
            raise ValidationError(f"Malformed assignment grade {record.grade!r} for student {record.student_id}")
        if record.grade < 0:
            raise ValidationError(f"Negative assignment grade {record.grade!r} for student {record.student_id}")
        values.append(to_decimal(record.grade))
    if not values:
        return 0
    average = sum(values) / len(values)
    capped = min(average, Decimal(100))
    return round_half_up(capped / 100 * ASSIGNMENTS_MAX)


def exam_component(score: Optional[Number]) -> Optional[float]:
    """Clamp an exam total into the transcript's exam range; None stays None."""
    if score is None:
        return None
    value = float(score)
    return min(max(value, 0.0), float(EXAM_MAX))


def final_score(attendance: int, participation: int, assignments: int, exam: Optional[float]) -> float:
    return float(attendance + participation + assignments) + (exam if exam is not None else 0.0)


def semester_average(finals: Iterable[float]) -> float:
    finals = list(finals)
    if not finals:
        return 0.0
    return sum(finals) / len(finals)


@dataclass(frozen=True)
class CourseScore:
    """Computed components of one (student, course) pair."""
    course_id: str
    attendance: int
    participation: int
    assignments: int
    exam: Optional[float]

    @property
    def final(self) -> float:
        return final_score(self.attendance, self.participation, self.assignments, self.exam)

    @property
    def percentage(self) -> float:
        return self.final
