"""Pydantic schemas for raw documents read from storage.

Storage speaks in camelCase documents (the shape the hosted document store
uses). These models validate a document once and convert it into the
dataclass domain models the services work with.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from exam_app.constants.exam_constants import DEFAULT_QUESTION_POINTS
from exam_app.core.models import (
    EligibilityFilter,
    Exam,
    ExamQuestion,
    ExamStatus,
    QuestionType,
    StudentProfile,
)


class QuestionRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question: str
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    options: list[str] = Field(default_factory=list)
    answer: str
    points: int | None = None

    @field_validator("points")
    @classmethod
    def _positive_points(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("Question points must be a positive integer.")
        return value

    def to_domain(self) -> ExamQuestion:
        return ExamQuestion(
            text=self.question,
            question_type=self.type,
            correct_answer=self.answer,
            options=list(self.options),
            points=self.points or DEFAULT_QUESTION_POINTS,
        )


class ExamRecord(BaseModel):
    """Exam document as stored in the ``exams`` collection."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    duration: int = Field(gt=0)
    questions: list[QuestionRecord] = Field(default_factory=list)
    class_name: str = Field(alias="class")
    section: str
    group: str
    status: ExamStatus = ExamStatus.ACTIVE
    end_time: datetime = Field(alias="endTime")
    shuffle_questions: bool = Field(default=True, alias="shuffleQuestions")

    @field_validator("end_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_domain(self, exam_id: str) -> Exam:
        return Exam(
            id=exam_id,
            title=self.title,
            duration_minutes=self.duration,
            questions=[question.to_domain() for question in self.questions],
            eligibility=EligibilityFilter(
                class_name=self.class_name,
                section=self.section,
                group=self.group,
            ),
            status=self.status,
            expires_at=self.end_time,
            shuffle_questions=self.shuffle_questions,
        )


class StudentRecord(BaseModel):
    """Student document as stored in the ``students`` collection."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    class_name: str = Field(alias="class")
    section: str
    group: str
    mobile_number: str = Field(alias="mobileNumber")

    @field_validator("mobile_number", mode="before")
    @classmethod
    def _coerce_mobile_number(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value

    def to_domain(self) -> StudentProfile:
        # The mobile number is the stable identifier results are keyed on,
        # never the raw auth uid.
        return StudentProfile(
            student_id=self.mobile_number,
            name=self.name,
            class_name=self.class_name,
            section=self.section,
            group=self.group,
            mobile_number=self.mobile_number,
        )
