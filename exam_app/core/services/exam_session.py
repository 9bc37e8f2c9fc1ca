"""State of one student's attempt at one exam."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
import logging
from uuid import uuid4

from exam_app.core.errors import InvalidSessionStateError
from exam_app.core.models import (
    Exam,
    ExamQuestion,
    ExamResult,
    PresentationPlan,
    SessionState,
    StudentProfile,
)
from exam_app.core.services.answer_store import AnswerStore

logger = logging.getLogger(__name__)


def _ignore(*_args: object) -> None:
    return None


@dataclass(slots=True)
class SessionListener:
    """Callbacks a caller registers to follow a session."""

    on_warning: Callable[[int, int], None] = _ignore
    on_terminated: Callable[[], None] = _ignore
    on_submitted: Callable[[ExamResult], None] = _ignore
    on_submission_failed: Callable[[Exception], None] = _ignore
    on_tick: Callable[[int], None] = _ignore


class ExamSession:
    """Session entity; every state change goes through ``transition``."""

    def __init__(self, exam: Exam, student: StudentProfile, plan: PresentationPlan) -> None:
        if len(plan) != exam.question_count:
            raise ValueError("Presentation plan does not cover every question.")
        self.id: str = uuid4().hex
        self.exam = exam
        self.student = student
        self.plan = plan
        self.answers = AnswerStore(exam.questions)
        self.started_at: datetime | None = None
        self.strike_count: int = 0
        self.result: ExamResult | None = None
        self.last_error: str | None = None
        self._state = SessionState.NOT_STARTED

    @property
    def exam_id(self) -> str:
        return self.exam.id

    @property
    def student_id(self) -> str:
        return self.student.student_id

    @property
    def state(self) -> SessionState:
        return self._state

    def transition(self, allowed_from: tuple[SessionState, ...], target: SessionState) -> bool:
        """Move to ``target`` only if the current state is in ``allowed_from``.

        Runs without suspension points, so on a single event loop it behaves
        as a compare-and-swap: of two triggers racing for the same move,
        exactly one wins.
        """
        if self._state not in allowed_from:
            return False
        logger.debug("Session %s: %s -> %s", self.id, self._state.value, target.value)
        self._state = target
        return True

    def question_at(self, presentation_index: int) -> ExamQuestion:
        return self.exam.questions[self.plan.original_index(presentation_index)]

    def record_answer(self, presentation_index: int, value: str) -> int:
        """Store an answer given at a presentation slot; returns its original index."""
        if self._state is not SessionState.IN_PROGRESS:
            raise InvalidSessionStateError(f"Cannot answer while the session is {self._state.value}.")
        original_index = self.plan.original_index(presentation_index)
        self.answers.set_answer(original_index, value)
        return original_index

    def presented_questions(self) -> list[tuple[int, int, ExamQuestion]]:
        """``(presentation_index, original_index, question)`` in display order."""
        return [
            (presentation_index, original_index, self.exam.questions[original_index])
            for presentation_index, original_index in enumerate(self.plan.order)
        ]
