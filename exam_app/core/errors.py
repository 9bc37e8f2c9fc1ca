"""Exceptions raised by the exam engine."""

from __future__ import annotations


class ExamError(Exception):
    """Base class for all engine errors."""


class ExamNotFoundError(ExamError):
    """Raised when an exam document does not exist."""


class StudentNotFoundError(ExamNotFoundError):
    """Raised when no student profile matches the verified identity."""


class IneligibleError(ExamError):
    """Raised when the student's class/section/group does not match the exam."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ExamExpiredError(ExamError):
    """Raised when an exam is completed or past its expiry instant."""


class IncompleteAnswersError(ExamError):
    """Raised when a manual submission leaves questions unanswered."""

    def __init__(self, remaining: int) -> None:
        super().__init__(f"Please answer all questions. {remaining} questions remaining.")
        self.remaining = remaining


class DuplicateSubmissionError(ExamError):
    """Raised when a submission lock already exists for the exam and student."""


class AlreadySubmittedError(ExamError):
    """Raised when starting an exam the student already has a result for."""


class StorageTransientError(ExamError):
    """Raised by storage backends for failures worth retrying."""


class SubmissionFailedError(ExamError):
    """Raised once transient retries are exhausted; the student may retry."""


class ConfigurationError(ExamError):
    """Raised for corrupt exam definitions, e.g. zero total points."""


class InvalidSessionStateError(ExamError):
    """Raised when an operation is not allowed in the session's current state."""


class SessionNotFoundError(ExamError):
    """Raised when a session handle is unknown to the manager."""
