"""Domain models for the exam engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TEXT_INPUT = "text_input"


class ExamStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class SessionState(str, Enum):
    """Lifecycle of one student's attempt at one exam."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED_RETRYABLE = "failed_retryable"
    TERMINATED = "terminated"

    @property
    def is_final(self) -> bool:
        return self in (SessionState.SUBMITTED, SessionState.TERMINATED)


class SubmitTrigger(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    FORCED = "forced"


@dataclass(slots=True)
class ExamQuestion:
    """A single question in its canonical (original) position."""

    text: str
    question_type: QuestionType
    correct_answer: str
    options: list[str] = field(default_factory=list)
    points: int = 1


@dataclass(slots=True, frozen=True)
class EligibilityFilter:
    """Class/section/group an exam is scoped to."""

    class_name: str
    section: str
    group: str


@dataclass(slots=True)
class Exam:
    id: str
    title: str
    duration_minutes: int
    questions: list[ExamQuestion]
    eligibility: EligibilityFilter
    status: ExamStatus
    expires_at: datetime
    shuffle_questions: bool = True

    @property
    def question_count(self) -> int:
        return len(self.questions)

    @property
    def total_points(self) -> int:
        return sum(question.points for question in self.questions)


@dataclass(slots=True)
class StudentProfile:
    """Profile fields the engine reads from the student directory."""

    student_id: str
    name: str
    class_name: str
    section: str
    group: str
    mobile_number: str


@dataclass(slots=True, frozen=True)
class StudentContext:
    """Verified identity handed over by the authentication collaborator."""

    auth_uid: str


@dataclass(slots=True, frozen=True)
class PresentationPlan:
    """Shuffled presentation order together with its reverse mapping.

    ``order[presentation_index]`` is the original index shown at that slot,
    which makes ``order`` itself the answer mapping.
    """

    order: tuple[int, ...]

    def original_index(self, presentation_index: int) -> int:
        if not 0 <= presentation_index < len(self.order):
            raise IndexError(f"Presentation index {presentation_index} out of range")
        return self.order[presentation_index]

    def presentation_index(self, original_index: int) -> int:
        return self.order.index(original_index)

    def __len__(self) -> int:
        return len(self.order)


@dataclass(slots=True, frozen=True)
class ScoreBreakdown:
    points_earned: int
    points_possible: int
    percent: int


@dataclass(slots=True)
class ExamResult:
    """Committed outcome of a session; written once per exam and student."""

    exam_id: str
    student_id: str
    answers: dict[int, str]
    score_percent: int
    points_earned: int
    points_possible: int
    submitted_at: datetime
    auto_submitted: bool
    trigger: SubmitTrigger
    time_taken_seconds: int
    strike_count: int = 0
    exam_title: str = ""
    student_name: str = ""
    student_class: str = ""
    student_section: str = ""
    student_group: str = ""
    visible_to_student: bool = False

    def to_record(self) -> dict[str, object]:
        """Serialize into the document shape written to storage."""
        return {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "answers": {str(index): value for index, value in self.answers.items()},
            "scorePercent": self.score_percent,
            "pointsEarned": self.points_earned,
            "pointsPossible": self.points_possible,
            "submitInstant": self.submitted_at.isoformat(),
            "autoSubmitted": self.auto_submitted,
            "trigger": self.trigger.value,
            "timeTakenSeconds": self.time_taken_seconds,
            "strikeCount": self.strike_count,
            "examTitle": self.exam_title,
            "studentName": self.student_name,
            "studentClass": self.student_class,
            "studentSection": self.student_section,
            "studentGroup": self.student_group,
            "visibleToStudent": self.visible_to_student,
        }

    @classmethod
    def from_record(cls, record: dict[str, object]) -> "ExamResult":
        raw_answers = record.get("answers") or {}
        return cls(
            exam_id=str(record["examId"]),
            student_id=str(record["studentId"]),
            answers={int(index): str(value) for index, value in dict(raw_answers).items()},
            score_percent=int(record["scorePercent"]),
            points_earned=int(record["pointsEarned"]),
            points_possible=int(record["pointsPossible"]),
            submitted_at=datetime.fromisoformat(str(record["submitInstant"])),
            auto_submitted=bool(record.get("autoSubmitted", False)),
            trigger=SubmitTrigger(record.get("trigger", SubmitTrigger.MANUAL.value)),
            time_taken_seconds=int(record.get("timeTakenSeconds", 0)),
            strike_count=int(record.get("strikeCount", 0)),
            exam_title=str(record.get("examTitle", "")),
            student_name=str(record.get("studentName", "")),
            student_class=str(record.get("studentClass", "")),
            student_section=str(record.get("studentSection", "")),
            student_group=str(record.get("studentGroup", "")),
            visible_to_student=bool(record.get("visibleToStudent", False)),
        )
