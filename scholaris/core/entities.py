"""
Core entities for the exam subsystem and the transcript store.

Entities are plain records: repositories build them from rows and services
pass them around. Lifecycle rules live in the services, not here.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Union

from .enums import QuestionType, AttemptState, ExamStatus, MarkStatus, DEFAULT_EXAM_TOTAL_MARKS


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Answer values: exactly one variant per question kind.

@dataclass(frozen=True)
class ChoiceAnswer:
    """Selected option for single-choice and true/false questions."""
    option_id: Optional[str]


@dataclass(frozen=True)
class EssayAnswer:
    """Free-text answer."""
    text: str


@dataclass(frozen=True)
class MatrixAnswer:
    """Row key -> selected option ids."""
    selections: Dict[str, FrozenSet[str]]

    @classmethod
    def from_lists(cls, selections: Dict[str, Any]) -> "MatrixAnswer":
        normalized: Dict[str, FrozenSet[str]] = {}
        for row, picked in selections.items():
            if isinstance(picked, str):
                picked = [picked]
            normalized[str(row)] = frozenset(picked or [])
        return cls(selections=normalized)


AnswerValue = Union[ChoiceAnswer, EssayAnswer, MatrixAnswer]


def answer_to_dict(value: Optional[AnswerValue]) -> Optional[Dict[str, Any]]:
    """Serialize an answer value to a JSON-friendly dict."""
    if value is None:
        return None
    if isinstance(value, ChoiceAnswer):
        return {"option_id": value.option_id}
    if isinstance(value, EssayAnswer):
        return {"text": value.text}
    if isinstance(value, MatrixAnswer):
        return {"selections": {row: sorted(picked) for row, picked in value.selections.items()}}
    raise TypeError(f"Unsupported answer value: {type(value).__name__}")


def answer_from_dict(data: Optional[Dict[str, Any]]) -> Optional[AnswerValue]:
    """Inverse of :func:`answer_to_dict`."""
    if data is None:
        return None
    if "option_id" in data:
        return ChoiceAnswer(option_id=data["option_id"])
    if "text" in data:
        return EssayAnswer(text=data["text"])
    if "selections" in data:
        return MatrixAnswer.from_lists(data["selections"] or {})
    raise ValueError(f"Unrecognised answer payload keys: {sorted(data)}")


@dataclass
class Exam:
    """A timed examination for one course in one semester."""
    course_id: str
    semester_id: str
    title: str
    start_at: datetime
    end_at: datetime
    total_marks: float = DEFAULT_EXAM_TOTAL_MARKS
    is_published: bool = False
    is_results_released: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> ExamStatus:
        if self.is_results_released:
            return ExamStatus.RESULTS_RELEASED
        if self.is_published:
            return ExamStatus.PUBLISHED
        return ExamStatus.DRAFT

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_at"] = self.start_at.isoformat()
        data["end_at"] = self.end_at.isoformat()
        data["created_at"] = self.created_at.isoformat()
        data["status"] = self.status.value
        return data


@dataclass
class ExamOption:
    question_id: str
    text: str
    is_correct: bool = False
    order_index: int = 0
    id: str = field(default_factory=new_id)


@dataclass
class ExamQuestion:
    """A question of an exam.

    Matrix questions reuse ``options`` as their columns; ``matrix_answers``
    maps each row key (the row's position as a string) to the set of option
    ids that make the row correct.
    """
    exam_id: str
    question_type: QuestionType
    text: str
    marks: float
    order_index: int = 0
    options: List[ExamOption] = field(default_factory=list)
    matrix_rows: List[str] = field(default_factory=list)
    matrix_answers: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def option(self, option_id: str) -> Optional[ExamOption]:
        for candidate in self.options:
            if candidate.id == option_id:
                return candidate
        return None

    @property
    def option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options)

    @property
    def row_keys(self) -> List[str]:
        return [str(i) for i in range(len(self.matrix_rows))]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "question_type": self.question_type.value,
            "text": self.text,
            "marks": self.marks,
            "order_index": self.order_index,
            "options": [asdict(o) for o in self.options],
            "matrix_rows": list(self.matrix_rows),
            "matrix_answers": {row: sorted(ids) for row, ids in self.matrix_answers.items()},
        }


@dataclass
class ExamAttempt:
    """One student's run through one exam."""
    exam_id: str
    student_id: str
    started_at: datetime = field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    total_score: Optional[float] = None
    is_submitted: bool = False
    id: str = field(default_factory=new_id)

    @property
    def state(self) -> AttemptState:
        return AttemptState.SUBMITTED if self.is_submitted else AttemptState.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "started_at": self.started_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "total_score": self.total_score,
            "is_submitted": self.is_submitted,
            "state": self.state.value,
        }


@dataclass
class ExamAnswer:
    attempt_id: str
    question_id: str
    value: Optional[AnswerValue] = None
    is_correct: Optional[bool] = None
    awarded_marks: Optional[float] = None
    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "question_id": self.question_id,
            "value": answer_to_dict(self.value),
            "is_correct": self.is_correct,
            "awarded_marks": self.awarded_marks,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ExamException:
    """Per-student deadline extension for one exam."""
    exam_id: str
    student_id: str
    extended_until: datetime
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TranscriptCourse:
    """Snapshot of one course's scores inside a released transcript."""
    course_id: str
    course_code: str
    course_name: str
    attendance_score: int
    participation_score: int
    assignments_score: int
    exam_score: Optional[float]
    final_score: float
    percentage: float
    transcript_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SemesterTranscript:
    """Immutable released record of one student's semester."""
    student_id: str
    semester_id: str
    semester_name: str
    semester_average: float
    released_at: datetime = field(default_factory=utcnow)
    courses: List[TranscriptCourse] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "semester_id": self.semester_id,
            "semester_name": self.semester_name,
            "semester_average": self.semester_average,
            "released_at": self.released_at.isoformat(),
            "courses": [c.to_dict() for c in self.courses],
        }


# Records read from external collaborators.

@dataclass(frozen=True)
class Enrollment:
    student_id: str
    course_id: str
    semester_id: str


@dataclass(frozen=True)
class SlotMark:
    """One recorded attendance or participation mark."""
    course_id: str
    student_id: str
    lecture_index: int
    status: MarkStatus


@dataclass(frozen=True)
class AssignmentGrade:
    """A submission row; ``grade`` is None until the submission is graded."""
    student_id: str
    course_id: str
    grade: Optional[float]


@dataclass(frozen=True)
class CourseInfo:
    id: str
    code: str
    name: str
    semester_id: str


@dataclass(frozen=True)
class SemesterInfo:
    id: str
    name: str
