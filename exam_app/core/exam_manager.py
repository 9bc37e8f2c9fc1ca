"""Entry point used by callers (API, dashboards) to run exam sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from pydantic import ValidationError

from exam_app.constants.exam_constants import (
    DEFAULT_SHUFFLE_QUESTIONS,
    SIGNAL_DEDUPE_SECONDS,
    STRIKE_LIMIT,
    SUBMIT_RETRY_ATTEMPTS,
    SUBMIT_RETRY_DELAY_SECONDS,
    TICK_INTERVAL_SECONDS,
)
from exam_app.core.errors import (
    AlreadySubmittedError,
    ExamExpiredError,
    IneligibleError,
    InvalidSessionStateError,
    SessionNotFoundError,
)
from exam_app.core.models import (
    ExamResult,
    ExamStatus,
    SessionState,
    StudentContext,
    SubmitTrigger,
)
from exam_app.core.records import ExamRecord
from exam_app.core.services.exam_repository import ExamRepository
from exam_app.core.services.exam_session import ExamSession, SessionListener
from exam_app.core.services.integrity_monitor import (
    EnvironmentSignal,
    SignalSource,
    SyntheticSignalSource,
)
from exam_app.core.services.question_randomizer import QuestionRandomizer
from exam_app.core.services.submission_coordinator import SubmissionCoordinator
from exam_app.core.storage import ExamStorage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class EngineConfig:
    strike_limit: int = STRIKE_LIMIT
    submit_retry_attempts: int = SUBMIT_RETRY_ATTEMPTS
    submit_retry_delay_seconds: float = SUBMIT_RETRY_DELAY_SECONDS
    tick_interval_seconds: float = TICK_INTERVAL_SECONDS
    signal_dedupe_seconds: float = SIGNAL_DEDUPE_SECONDS
    shuffle_questions: bool = DEFAULT_SHUFFLE_QUESTIONS


class ExamManager:
    """Facade over the repository, randomizer and per-session coordinators."""

    def __init__(
        self,
        storage: ExamStorage,
        config: EngineConfig | None = None,
        *,
        randomizer: QuestionRandomizer | None = None,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._config = config or EngineConfig()
        self._repository = ExamRepository(storage)
        self._randomizer = randomizer or QuestionRandomizer()
        self._now = now
        self._sleep = sleep
        self._coordinators: dict[str, SubmissionCoordinator] = {}
        self._signal_sources: dict[str, SyntheticSignalSource] = {}
        self._handles_by_attempt: dict[tuple[str, str], str] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    # --- Session lifecycle ---

    async def start_session(
        self,
        exam_id: str,
        student: StudentContext,
        listener: SessionListener | None = None,
        signal_source: SignalSource | None = None,
    ) -> ExamSession:
        """Validate the attempt and start a new in-progress session.

        Raises ``ExamNotFoundError``/``StudentNotFoundError``,
        ``ExamExpiredError``, ``IneligibleError`` or ``AlreadySubmittedError``
        before any session exists.
        Starting again while an attempt is still running returns that same
        session, so a reload keeps the original question order.
        """
        exam = await self._repository.load_exam(exam_id)
        if not self._repository.is_open(exam, self._now()):
            raise ExamExpiredError("This exam is no longer available.")
        profile = await self._repository.load_student_profile(student.auth_uid)
        eligibility = self._repository.check_eligibility(exam, profile)
        if not eligibility.eligible:
            raise IneligibleError(eligibility.reason or "You are not eligible for this exam.")

        existing = self._running_session(exam.id, profile.student_id)
        if existing is not None:
            logger.info("Resuming session %s for student %s.", existing.id, profile.student_id)
            return existing

        if await self._storage.get_result(exam.id, profile.student_id) is not None:
            raise AlreadySubmittedError("You have already submitted this exam.")

        if self._config.shuffle_questions and exam.shuffle_questions:
            plan = self._randomizer.shuffle(exam.question_count)
        else:
            plan = self._randomizer.identity(exam.question_count)
        session = ExamSession(exam=exam, student=profile, plan=plan)

        synthetic: SyntheticSignalSource | None = None
        if signal_source is None:
            synthetic = SyntheticSignalSource()
            signal_source = synthetic
        coordinator = SubmissionCoordinator(
            session,
            self._storage,
            signal_source,
            listener,
            strike_limit=self._config.strike_limit,
            signal_dedupe_seconds=self._config.signal_dedupe_seconds,
            tick_interval_seconds=self._config.tick_interval_seconds,
            retry_attempts=self._config.submit_retry_attempts,
            retry_delay_seconds=self._config.submit_retry_delay_seconds,
            now=self._now,
            sleep=self._sleep,
        )
        self._coordinators[session.id] = coordinator
        if synthetic is not None:
            self._signal_sources[session.id] = synthetic
        self._handles_by_attempt[(exam.id, profile.student_id)] = session.id
        await coordinator.start()
        return session

    def get_session(self, handle: str) -> ExamSession:
        return self.get_coordinator(handle).session

    def get_coordinator(self, handle: str) -> SubmissionCoordinator:
        coordinator = self._coordinators.get(handle)
        if coordinator is None:
            raise SessionNotFoundError(f"Unknown session {handle!r}.")
        return coordinator

    def record_answer(self, handle: str, presentation_index: int, value: str) -> int:
        return self.get_session(handle).record_answer(presentation_index, value)

    async def request_manual_submit(self, handle: str) -> ExamResult | None:
        coordinator = self.get_coordinator(handle)
        if coordinator.session.state is SessionState.FAILED_RETRYABLE:
            return await coordinator.retry_submission()
        return await coordinator.submit(SubmitTrigger.MANUAL)

    def report_signal(self, handle: str, signal: EnvironmentSignal) -> None:
        self.get_coordinator(handle)
        source = self._signal_sources.get(handle)
        if source is None:
            raise InvalidSessionStateError("This session listens to its own signal source.")
        source.emit(signal)

    def remaining_seconds(self, handle: str) -> int:
        return self.get_coordinator(handle).remaining_seconds()

    def close_session(self, handle: str) -> None:
        """Forget a session that has reached a final state."""
        session = self.get_session(handle)
        if not session.state.is_final:
            raise InvalidSessionStateError(f"Session is still {session.state.value}.")
        self.end_session(handle)

    def end_session(self, handle: str) -> None:
        """Forget a session, stopping its timer and listeners."""
        coordinator = self._coordinators.pop(handle, None)
        if coordinator is None:
            return
        coordinator.shutdown()
        self._signal_sources.pop(handle, None)
        session = coordinator.session
        attempt = (session.exam_id, session.student_id)
        if self._handles_by_attempt.get(attempt) == handle:
            del self._handles_by_attempt[attempt]

    def shutdown(self) -> None:
        for handle in list(self._coordinators):
            self.end_session(handle)

    def _running_session(self, exam_id: str, student_id: str) -> ExamSession | None:
        handle = self._handles_by_attempt.get((exam_id, student_id))
        if handle is None or handle not in self._coordinators:
            return None
        session = self._coordinators[handle].session
        if session.state in (SessionState.IN_PROGRESS, SessionState.SUBMITTING, SessionState.FAILED_RETRYABLE):
            return session
        return None

    # --- Results and exam housekeeping ---

    async def query_results(self, exam_id: str) -> list[ExamResult]:
        records = await self._storage.query_results_for_exam(exam_id)
        results = [ExamResult.from_record(record) for record in records]
        return sorted(results, key=lambda result: (-result.score_percent, result.submitted_at))

    async def release_results(self, exam_id: str) -> int:
        released = await self._storage.release_results(exam_id)
        logger.info("Released %d result(s) for exam %s.", released, exam_id)
        return released

    async def close_expired_exams(self) -> list[str]:
        """Mark active exams past their expiry as completed."""
        now = self._now()
        closed: list[str] = []
        for exam_id, document in (await self._storage.query_exams(ExamStatus.ACTIVE.value)).items():
            try:
                end_time = ExamRecord.model_validate(document).end_time
            except ValidationError:
                logger.warning("Skipping exam %s with an invalid definition.", exam_id)
                continue
            if end_time <= now:
                await self._storage.set_exam_status(exam_id, ExamStatus.COMPLETED.value)
                closed.append(exam_id)
        if closed:
            logger.info("Closed expired exams: %s", ", ".join(closed))
        return closed
