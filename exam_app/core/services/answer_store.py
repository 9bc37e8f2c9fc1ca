"""In-memory answers keyed by original question index."""

from __future__ import annotations

from exam_app.core.models import ExamQuestion, QuestionType


def normalize_answer(question: ExamQuestion, value: str) -> str:
    """Normalize an answer the way it is stored and graded.

    Text-input answers compare case- and whitespace-insensitively.
    """
    if question.question_type is QuestionType.TEXT_INPUT:
        return value.strip().lower()
    return value


class AnswerStore:
    """Sparse mapping from original question index to the current answer."""

    def __init__(self, questions: list[ExamQuestion]) -> None:
        self._questions = questions
        self._answers: dict[int, str] = {}

    def set_answer(self, original_index: int, value: str) -> None:
        if not 0 <= original_index < len(self._questions):
            raise IndexError(f"Question index {original_index} out of range")
        self._answers[original_index] = normalize_answer(self._questions[original_index], value)

    def get_answer(self, original_index: int) -> str | None:
        return self._answers.get(original_index)

    def all_answered(self, question_count: int | None = None) -> bool:
        count = len(self._questions) if question_count is None else question_count
        return all(self._is_answered(index) for index in range(count))

    def unanswered_count(self) -> int:
        return sum(1 for index in range(len(self._questions)) if not self._is_answered(index))

    def snapshot(self) -> dict[int, str]:
        return dict(self._answers)

    def _is_answered(self, index: int) -> bool:
        # An emptied text box counts as unanswered.
        return bool(self._answers.get(index, "").strip())
