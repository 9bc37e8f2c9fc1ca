"""Exam engine constants shared across core services and the API layer."""

STRIKE_LIMIT: int = 3
DEFAULT_QUESTION_POINTS: int = 1
DEFAULT_SHUFFLE_QUESTIONS: bool = True

TICK_INTERVAL_SECONDS: float = 1.0
SIGNAL_DEDUPE_SECONDS: float = 1.0

SUBMIT_RETRY_ATTEMPTS: int = 3
SUBMIT_RETRY_DELAY_SECONDS: float = 3.0

LOCK_KEY_TEMPLATE: str = "{exam_id}_{student_id}"
WARNING_MESSAGE_TEMPLATE: str = (
    "You have switched away from the exam {count} time(s). "
    "After {limit} attempts your exam will be closed automatically."
)
