import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_app.core.errors import StorageTransientError
from exam_app.core.models import (
    EligibilityFilter,
    Exam,
    ExamQuestion,
    ExamStatus,
    QuestionType,
    StudentProfile,
)
from exam_app.core.storage import InMemoryExamStorage


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=START):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current = self.current + timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FlakyStorage(InMemoryExamStorage):
    """Fails ``commit_result`` a fixed number of times before delegating."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.commit_calls = 0
        self.fail_markers = False

    async def commit_result(self, lock_key, lock_record, result_record):
        self.commit_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageTransientError("unavailable")
        await super().commit_result(lock_key, lock_record, result_record)

    async def write_attempt_marker(self, exam_id, student_id, marker):
        if self.fail_markers:
            raise StorageTransientError("marker store down")
        await super().write_attempt_marker(exam_id, student_id, marker)


def exam_document(**overrides):
    document = {
        "title": "Geography Unit Test",
        "duration": 30,
        "class": "10",
        "section": "A",
        "group": "Science",
        "status": "active",
        "endTime": "2026-03-02T18:00:00+00:00",
        "questions": [
            {"question": "Capital of France?", "type": "text_input", "answer": "Paris", "points": 1},
            {
                "question": "Largest ocean?",
                "type": "multiple_choice",
                "options": ["Atlantic", "Pacific", "Indian"],
                "answer": "Pacific",
                "points": 2,
            },
            {
                "question": "Solve $2x = 6$.",
                "type": "multiple_choice",
                "options": ["2", "3", "6"],
                "answer": "3",
                "points": 3,
            },
        ],
    }
    document.update(overrides)
    return document


def student_document(**overrides):
    document = {
        "name": "Amina Rahman",
        "class": "10",
        "section": "A",
        "group": "Science",
        "mobileNumber": "01700000001",
    }
    document.update(overrides)
    return document


def make_exam(points=(1, 2, 3), duration=30):
    questions = [
        ExamQuestion(text="Capital of France?", question_type=QuestionType.TEXT_INPUT, correct_answer="Paris", points=points[0]),
        ExamQuestion(
            text="Largest ocean?",
            question_type=QuestionType.MULTIPLE_CHOICE,
            correct_answer="Pacific",
            options=["Atlantic", "Pacific", "Indian"],
            points=points[1],
        ),
        ExamQuestion(
            text="Solve 2x = 6.",
            question_type=QuestionType.MULTIPLE_CHOICE,
            correct_answer="3",
            options=["2", "3", "6"],
            points=points[2],
        ),
    ]
    return Exam(
        id="geo-101",
        title="Geography Unit Test",
        duration_minutes=duration,
        questions=questions,
        eligibility=EligibilityFilter(class_name="10", section="A", group="Science"),
        status=ExamStatus.ACTIVE,
        expires_at=START + timedelta(hours=9),
    )


def make_student():
    return StudentProfile(
        student_id="01700000001",
        name="Amina Rahman",
        class_name="10",
        section="A",
        group="Science",
        mobile_number="01700000001",
    )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def storage():
    return InMemoryExamStorage(
        exams={"geo-101": exam_document()},
        students={"uid-amina": student_document()},
    )
