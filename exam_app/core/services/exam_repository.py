"""Service for loading exam definitions and checking who may take them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from pydantic import ValidationError

from exam_app.core.errors import (
    ConfigurationError,
    ExamNotFoundError,
    StudentNotFoundError,
)
from exam_app.core.models import Exam, ExamQuestion, ExamStatus, QuestionType, StudentProfile
from exam_app.core.records import ExamRecord, StudentRecord
from exam_app.core.storage import ExamStorage

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Eligibility:
    eligible: bool
    reason: str | None = None


class ExamRepository:
    """Read-only accessor for exams and student profiles."""

    def __init__(self, storage: ExamStorage) -> None:
        self._storage = storage

    async def load_exam(self, exam_id: str) -> Exam:
        document = await self._storage.get_exam(exam_id)
        if document is None:
            raise ExamNotFoundError(f"Exam {exam_id!r} not found.")
        try:
            record = ExamRecord.model_validate(document)
        except ValidationError as exc:
            raise ConfigurationError(f"Exam {exam_id!r} has an invalid definition: {exc}") from exc
        exam = record.to_domain(exam_id)
        self._validate_questions(exam)
        return exam

    async def load_student_profile(self, auth_uid: str) -> StudentProfile:
        document = await self._storage.get_student_profile(auth_uid)
        if document is None:
            raise StudentNotFoundError("Student data not found.")
        try:
            return StudentRecord.model_validate(document).to_domain()
        except ValidationError as exc:
            raise StudentNotFoundError(f"Student profile is incomplete: {exc}") from exc

    @staticmethod
    def check_eligibility(exam: Exam, student: StudentProfile) -> Eligibility:
        scope = exam.eligibility
        if student.class_name != scope.class_name:
            return Eligibility(False, f"This exam is for class {scope.class_name}.")
        if student.section != scope.section:
            return Eligibility(False, f"This exam is for section {scope.section}.")
        if student.group != scope.group:
            return Eligibility(False, f"This exam is for the {scope.group} group.")
        return Eligibility(True)

    @staticmethod
    def is_open(exam: Exam, now: datetime) -> bool:
        return exam.status is ExamStatus.ACTIVE and now < exam.expires_at

    @staticmethod
    def _validate_questions(exam: Exam) -> None:
        if not exam.questions:
            raise ConfigurationError(f"Exam {exam.id!r} contains no questions.")
        for position, question in enumerate(exam.questions, start=1):
            ExamRepository._validate_question(exam.id, position, question)

    @staticmethod
    def _validate_question(exam_id: str, position: int, question: ExamQuestion) -> None:
        if not question.text.strip():
            raise ConfigurationError(f"Exam {exam_id!r}: question {position} has no text.")
        if question.points <= 0:
            raise ConfigurationError(f"Exam {exam_id!r}: question {position} must be worth at least one point.")
        if question.question_type is QuestionType.MULTIPLE_CHOICE:
            if len(question.options) < 2:
                raise ConfigurationError(f"Exam {exam_id!r}: question {position} needs at least two options.")
            if question.correct_answer not in question.options:
                raise ConfigurationError(
                    f"Exam {exam_id!r}: correct answer of question {position} is not one of its options."
                )
        elif not question.correct_answer.strip():
            raise ConfigurationError(f"Exam {exam_id!r}: question {position} has an empty answer key.")
