"""
REST API implementation for the Scholaris pipeline using FastAPI.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.entities import AnswerValue, answer_from_dict
from ..core.exceptions import (
    ScholarisException, ValidationError, StateError, OutOfWindowError, NotFoundError,
    PersistenceError, ConcurrencyError,
)
from ..services import ExamService, ReleaseService

logger = logging.getLogger(__name__)

# Most specific first; OutOfWindowError is checked before its base class.
ERROR_STATUS = [
    (OutOfWindowError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (StateError, status.HTTP_409_CONFLICT),
    (ConcurrencyError, status.HTTP_423_LOCKED),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


# Pydantic models for API
class ExamCreate(BaseModel):
    course_id: str = Field(..., min_length=1)
    semester_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    start_at: datetime
    end_at: datetime
    total_marks: float = Field(50, gt=0, le=50)


class ExamUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    total_marks: Optional[float] = Field(None, gt=0, le=50)


class ExamResponse(BaseModel):
    id: str
    course_id: str
    semester_id: str
    title: str
    start_at: datetime
    end_at: datetime
    total_marks: float
    is_published: bool
    is_results_released: bool
    status: str
    created_at: datetime


class OptionCreate(BaseModel):
    text: str = Field(..., min_length=1)
    is_correct: bool = False


class QuestionCreate(BaseModel):
    question_type: str = Field(..., pattern=r'^(single_choice|true_false|essay|matrix)$')
    text: str = Field(..., min_length=1)
    marks: float = Field(..., gt=0)
    options: List[OptionCreate] = []
    matrix_rows: List[str] = []
    matrix_columns: List[str] = []
    matrix_answers: Dict[str, List[int]] = {}


class QuestionUpdate(BaseModel):
    """Omitted fields keep their value; any shape field replaces the options."""
    text: Optional[str] = Field(None, min_length=1)
    marks: Optional[float] = Field(None, gt=0)
    options: Optional[List[OptionCreate]] = None
    matrix_rows: Optional[List[str]] = None
    matrix_columns: Optional[List[str]] = None
    matrix_answers: Optional[Dict[str, List[int]]] = None


class ExceptionGrant(BaseModel):
    extended_until: datetime


class AttemptCreate(BaseModel):
    student_id: str = Field(..., min_length=1)


class AttemptResponse(BaseModel):
    id: str
    exam_id: str
    student_id: str
    started_at: datetime
    submitted_at: Optional[datetime] = None
    total_score: Optional[float] = None
    is_submitted: bool
    state: str


class AnswerPayload(BaseModel):
    """Exactly one of the fields, matching the question type; none clears the answer."""
    option_id: Optional[str] = None
    text: Optional[str] = None
    selections: Optional[Dict[str, List[str]]] = None

    def to_value(self) -> Optional[AnswerValue]:
        data = self.model_dump(exclude_none=True)
        if len(data) > 1:
            raise ValidationError("An answer holds exactly one of option_id, text or selections")
        return answer_from_dict(data) if data else None


class SubmitRequest(BaseModel):
    answers: Dict[str, AnswerPayload] = {}


class EssayGrade(BaseModel):
    marks: float = Field(..., ge=0)
    is_correct: Optional[bool] = None


class ReleaseRequest(BaseModel):
    semester_name: Optional[str] = None


class ScholarisRestAPI:
    """REST API implementation for the Scholaris pipeline."""

    def __init__(self, exam_service: ExamService, release_service: ReleaseService):
        self._exam_service = exam_service
        self._release_service = release_service

        # Create FastAPI app
        self.app = FastAPI(
            title="Scholaris Academic Records API",
            description="Timed exams, grading and immutable semester transcripts",
            version="1.0.0",
            docs_url="/docs",
            redoc_url="/redoc"
        )

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_error_handlers()
        self._setup_routes()

    def _setup_error_handlers(self):
        """Map the error taxonomy onto HTTP status codes."""

        @self.app.exception_handler(ScholarisException)
        async def scholaris_error(request: Request, exc: ScholarisException):
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
            for error_type, code in ERROR_STATUS:
                if isinstance(exc, error_type):
                    status_code = code
                    break
            if status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            body: Dict[str, Any] = {"detail": exc.message, "error_code": exc.error_code, "details": exc.details}
            if isinstance(exc, OutOfWindowError):
                body["kind"] = exc.kind
            return JSONResponse(status_code=status_code, content=body)

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/", response_model=Dict[str, str])
        def root():
            """Root endpoint."""
            return {
                "message": "Scholaris Academic Records API",
                "version": "1.0.0",
                "docs": "/docs"
            }

        @self.app.get("/health", response_model=Dict[str, str])
        def health_check():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

        # Exam endpoints
        @self.app.post("/exams", response_model=ExamResponse, status_code=status.HTTP_201_CREATED)
        def create_exam(exam_data: ExamCreate):
            exam = self._exam_service.create_exam(
                course_id=exam_data.course_id,
                semester_id=exam_data.semester_id,
                title=exam_data.title,
                start_at=exam_data.start_at,
                end_at=exam_data.end_at,
                total_marks=exam_data.total_marks,
            )
            return exam.to_dict()

        @self.app.get("/exams/{exam_id}", response_model=ExamResponse)
        def get_exam(exam_id: str):
            return self._exam_service.get_exam(exam_id).to_dict()

        @self.app.patch("/exams/{exam_id}", response_model=ExamResponse)
        def update_exam(exam_id: str, exam_data: ExamUpdate):
            return self._exam_service.update_exam(
                exam_id,
                title=exam_data.title,
                start_at=exam_data.start_at,
                end_at=exam_data.end_at,
                total_marks=exam_data.total_marks,
            ).to_dict()

        @self.app.delete("/exams/{exam_id}", status_code=status.HTTP_204_NO_CONTENT)
        def delete_exam(exam_id: str):
            self._exam_service.delete_exam(exam_id)

        @self.app.get("/semesters/{semester_id}/exams", response_model=List[ExamResponse])
        def list_exams(semester_id: str, published_only: bool = False):
            exams = self._exam_service.list_exams(semester_id, published_only=published_only)
            return [exam.to_dict() for exam in exams]

        @self.app.post("/exams/{exam_id}/publish", response_model=ExamResponse)
        def publish_exam(exam_id: str):
            return self._exam_service.publish_exam(exam_id).to_dict()

        @self.app.post("/exams/{exam_id}/unpublish", response_model=ExamResponse)
        def unpublish_exam(exam_id: str):
            return self._exam_service.unpublish_exam(exam_id).to_dict()

        @self.app.post("/exams/{exam_id}/release-results", response_model=ExamResponse)
        def release_exam_results(exam_id: str):
            return self._exam_service.release_exam_results(exam_id).to_dict()

        @self.app.post("/exams/{exam_id}/questions", status_code=status.HTTP_201_CREATED)
        def add_question(exam_id: str, question_data: QuestionCreate):
            question = self._exam_service.add_question(
                exam_id,
                question_data.question_type,
                question_data.text,
                question_data.marks,
                options=[(o.text, o.is_correct) for o in question_data.options],
                matrix_rows=question_data.matrix_rows,
                matrix_columns=question_data.matrix_columns,
                matrix_answers=question_data.matrix_answers,
            )
            return question.to_dict()

        @self.app.get("/exams/{exam_id}/questions")
        def get_questions(exam_id: str):
            return [q.to_dict() for q in self._exam_service.get_questions(exam_id)]

        @self.app.put("/questions/{question_id}")
        def update_question(question_id: str, question_data: QuestionUpdate):
            options = None
            if question_data.options is not None:
                options = [(o.text, o.is_correct) for o in question_data.options]
            question = self._exam_service.update_question(
                question_id,
                text=question_data.text,
                marks=question_data.marks,
                options=options,
                matrix_rows=question_data.matrix_rows,
                matrix_columns=question_data.matrix_columns,
                matrix_answers=question_data.matrix_answers,
            )
            return question.to_dict()

        @self.app.delete("/questions/{question_id}", status_code=status.HTTP_204_NO_CONTENT)
        def delete_question(question_id: str):
            self._exam_service.delete_question(question_id)

        # Deadline extensions
        @self.app.put("/exams/{exam_id}/exceptions/{student_id}")
        def grant_exception(exam_id: str, student_id: str, grant: ExceptionGrant):
            exception = self._exam_service.grant_exception(exam_id, student_id, grant.extended_until)
            return {
                "exam_id": exception.exam_id,
                "student_id": exception.student_id,
                "extended_until": exception.extended_until.isoformat(),
            }

        @self.app.delete("/exams/{exam_id}/exceptions/{student_id}", status_code=status.HTTP_204_NO_CONTENT)
        def revoke_exception(exam_id: str, student_id: str):
            if not self._exam_service.revoke_exception(exam_id, student_id):
                raise NotFoundError(f"No exception for student {student_id} on exam {exam_id}")

        # Attempts and answers
        @self.app.post("/exams/{exam_id}/attempts", response_model=AttemptResponse)
        def create_or_get_attempt(exam_id: str, attempt_data: AttemptCreate):
            return self._exam_service.create_or_get_attempt(exam_id, attempt_data.student_id).to_dict()

        @self.app.get("/exams/{exam_id}/attempts", response_model=List[AttemptResponse])
        def list_attempts(exam_id: str):
            return [a.to_dict() for a in self._exam_service.list_attempts(exam_id)]

        @self.app.get("/attempts/{attempt_id}", response_model=AttemptResponse)
        def get_attempt(attempt_id: str):
            return self._exam_service.get_attempt(attempt_id).to_dict()

        @self.app.put("/attempts/{attempt_id}/answers/{question_id}")
        def save_answer(attempt_id: str, question_id: str, payload: AnswerPayload):
            return self._exam_service.save_answer(attempt_id, question_id, payload.to_value()).to_dict()

        @self.app.post("/attempts/{attempt_id}/submit", response_model=AttemptResponse)
        def submit_attempt(attempt_id: str, submit_data: SubmitRequest):
            answers = {qid: payload.to_value() for qid, payload in submit_data.answers.items()}
            return self._exam_service.submit_attempt(attempt_id, answers or None).to_dict()

        @self.app.get("/attempts/{attempt_id}/result")
        def get_attempt_result(attempt_id: str):
            return self._exam_service.get_attempt_result(attempt_id).to_dict()

        @self.app.post("/answers/{answer_id}/grade")
        def grade_essay_answer(answer_id: str, grade: EssayGrade):
            return self._exam_service.grade_essay_answer(answer_id, grade.marks, grade.is_correct).to_dict()

        # Semester release
        @self.app.post("/semesters/{semester_id}/release")
        def release_semester(semester_id: str, release_data: Optional[ReleaseRequest] = None):
            name = release_data.semester_name if release_data else None
            return self._release_service.release_semester(semester_id, name).to_dict()

        @self.app.delete("/semesters/{semester_id}/release")
        def unrelease_semester(semester_id: str):
            return {"semester_id": semester_id, "deleted": self._release_service.unrelease_semester(semester_id)}

        @self.app.get("/semesters/{semester_id}/release")
        def get_release_status(semester_id: str):
            return {"semester_id": semester_id, "released": self._release_service.is_semester_released(semester_id)}

        @self.app.get("/semesters/{semester_id}/students/{student_id}/preview")
        def preview_student(semester_id: str, student_id: str):
            return self._release_service.preview_student(semester_id, student_id).to_dict()

        @self.app.get("/students/{student_id}/transcript")
        def get_transcript(student_id: str):
            transcripts = self._release_service.get_transcript(student_id)
            return {
                "student_id": student_id,
                "semesters": [t.to_dict() for t in transcripts],
                "cumulative_average": self._release_service.cumulative_average(student_id),
            }
