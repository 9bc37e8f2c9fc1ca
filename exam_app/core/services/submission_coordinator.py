"""Lifecycle of a running exam: start, watch, score and commit once.

Architecture note:
    Three independent triggers can end a session: the student's manual
    submit, the timer reaching zero, and the integrity monitor passing its
    strike limit. They all funnel into ``submit``. Inside one process the
    session's compare-and-swap transition to ``submitting`` lets exactly one
    of them through. Across tabs or devices the storage-level lock keyed by
    exam and student does the same job; it is created in the same
    transaction as the result, so a lock never exists without its result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timezone
import logging

from exam_app.constants.exam_constants import (
    LOCK_KEY_TEMPLATE,
    SIGNAL_DEDUPE_SECONDS,
    STRIKE_LIMIT,
    SUBMIT_RETRY_ATTEMPTS,
    SUBMIT_RETRY_DELAY_SECONDS,
    TICK_INTERVAL_SECONDS,
)
from exam_app.core.errors import (
    ConfigurationError,
    DuplicateSubmissionError,
    IncompleteAnswersError,
    InvalidSessionStateError,
    StorageTransientError,
    SubmissionFailedError,
)
from exam_app.core.models import ExamResult, SessionState, SubmitTrigger
from exam_app.core.services.exam_session import ExamSession, SessionListener
from exam_app.core.services.integrity_monitor import IntegrityMonitor, SignalSource
from exam_app.core.services.result_scorer import score
from exam_app.core.services.session_clock import ExamTimer, SessionClock
from exam_app.core.storage import ExamStorage

logger = logging.getLogger(__name__)

_SUBMITTABLE = (SessionState.IN_PROGRESS, SessionState.FAILED_RETRYABLE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lock_key_for(exam_id: str, student_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(exam_id=exam_id, student_id=student_id)


class SubmissionCoordinator:
    """Drives one ``ExamSession`` through its state machine."""

    def __init__(
        self,
        session: ExamSession,
        storage: ExamStorage,
        signal_source: SignalSource,
        listener: SessionListener | None = None,
        *,
        strike_limit: int = STRIKE_LIMIT,
        signal_dedupe_seconds: float = SIGNAL_DEDUPE_SECONDS,
        tick_interval_seconds: float = TICK_INTERVAL_SECONDS,
        retry_attempts: int = SUBMIT_RETRY_ATTEMPTS,
        retry_delay_seconds: float = SUBMIT_RETRY_DELAY_SECONDS,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._storage = storage
        self._listener = listener or SessionListener()
        self._now = now
        self._sleep = sleep
        self._tick_sleep = tick_sleep
        self._tick_interval = tick_interval_seconds
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay_seconds
        self._clock: SessionClock | None = None
        self._timer: ExamTimer | None = None
        self._monitor = IntegrityMonitor(
            source=signal_source,
            on_warning=self._handle_warning,
            on_limit_exceeded=self._handle_limit_exceeded,
            limit=strike_limit,
            dedupe_seconds=signal_dedupe_seconds,
        )
        self._last_trigger: SubmitTrigger | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def session(self) -> ExamSession:
        return self._session

    @property
    def monitor(self) -> IntegrityMonitor:
        return self._monitor

    @property
    def timer(self) -> ExamTimer | None:
        return self._timer

    async def start(self) -> None:
        session = self._session
        if not session.transition((SessionState.NOT_STARTED,), SessionState.IN_PROGRESS):
            raise InvalidSessionStateError(f"Session already {session.state.value}.")
        session.started_at = self._now()
        self._clock = SessionClock(session.exam.duration_minutes, session.started_at)
        self._timer = ExamTimer(
            clock=self._clock,
            now=self._now,
            on_expire=self._handle_time_expired,
            on_tick=self._listener.on_tick,
            interval_seconds=self._tick_interval,
            sleep=self._tick_sleep,
        )
        self._monitor.start()
        self._timer.start()
        logger.info(
            "Student %s started exam %s (%d questions, %d min).",
            session.student_id,
            session.exam_id,
            session.exam.question_count,
            session.exam.duration_minutes,
        )
        await self._write_attempt_marker(SessionState.IN_PROGRESS)

    def remaining_seconds(self) -> int:
        if self._clock is None:
            return self._session.exam.duration_minutes * 60
        if self._session.state is not SessionState.IN_PROGRESS:
            return 0
        return self._clock.remaining_seconds(self._now())

    async def submit(self, trigger: SubmitTrigger) -> ExamResult | None:
        """Score and commit the session once; later calls are no-ops.

        Returns the committed result, or None when another trigger is already
        submitting. Manual submissions require every question answered.
        """
        session = self._session
        if session.state not in _SUBMITTABLE:
            logger.debug("Ignoring %s submit; session is %s.", trigger.value, session.state.value)
            return session.result
        if trigger is SubmitTrigger.MANUAL and not session.answers.all_answered():
            raise IncompleteAnswersError(session.answers.unanswered_count())
        if not session.transition(_SUBMITTABLE, SessionState.SUBMITTING):
            return session.result

        self._last_trigger = trigger
        self._stop_watching()
        try:
            result = self._build_result(trigger)
        except ConfigurationError as exc:
            session.last_error = str(exc)
            session.transition((SessionState.SUBMITTING,), SessionState.TERMINATED)
            logger.error("Cannot score exam %s: %s", session.exam_id, exc)
            raise

        committed = await self._commit_with_retry(result)
        if not committed:
            logger.info(
                "Exam %s was already submitted by student %s; keeping the stored result.",
                session.exam_id,
                session.student_id,
            )
            result = await self._load_existing_result()
        else:
            logger.info(
                "Student %s submitted exam %s (%s): %d/%d points, %d%%.",
                session.student_id,
                session.exam_id,
                trigger.value,
                result.points_earned,
                result.points_possible,
                result.score_percent,
            )

        session.result = result
        session.last_error = None
        final_state = SessionState.TERMINATED if trigger is SubmitTrigger.FORCED else SessionState.SUBMITTED
        session.transition((SessionState.SUBMITTING,), final_state)
        await self._write_attempt_marker(final_state, result)
        if result is not None:
            self._listener.on_submitted(result)
        if final_state is SessionState.TERMINATED:
            self._listener.on_terminated()
        return result

    async def retry_submission(self) -> ExamResult | None:
        """Re-run a submission that exhausted its retries, keeping its trigger."""
        if self._session.state is not SessionState.FAILED_RETRYABLE:
            raise InvalidSessionStateError("Nothing to retry; the last submission did not fail.")
        return await self.submit(self._last_trigger or SubmitTrigger.MANUAL)

    async def wait_background(self) -> None:
        """Wait for submissions started from synchronous signal callbacks."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def shutdown(self) -> None:
        self._stop_watching()
        for task in list(self._background):
            task.cancel()

    def _build_result(self, trigger: SubmitTrigger) -> ExamResult:
        session = self._session
        answers = session.answers.snapshot()
        breakdown = score(session.exam.questions, answers)
        submitted_at = self._now()
        started_at = session.started_at or submitted_at
        student = session.student
        return ExamResult(
            exam_id=session.exam_id,
            student_id=session.student_id,
            answers=answers,
            score_percent=breakdown.percent,
            points_earned=breakdown.points_earned,
            points_possible=breakdown.points_possible,
            submitted_at=submitted_at,
            auto_submitted=trigger is not SubmitTrigger.MANUAL,
            trigger=trigger,
            time_taken_seconds=max(0, int((submitted_at - started_at).total_seconds())),
            strike_count=session.strike_count,
            exam_title=session.exam.title,
            student_name=student.name,
            student_class=student.class_name,
            student_section=student.section,
            student_group=student.group,
        )

    async def _commit_with_retry(self, result: ExamResult) -> bool:
        """Commit the result; False when another submission already holds the lock."""
        session = self._session
        lock_key = lock_key_for(session.exam_id, session.student_id)
        lock_record = {
            "examId": session.exam_id,
            "studentId": session.student_id,
            "createdAt": result.submitted_at.isoformat(),
        }
        record = result.to_record()
        for attempt in range(1, self._retry_attempts + 1):
            try:
                await self._storage.commit_result(lock_key, lock_record, record)
                return True
            except DuplicateSubmissionError:
                return False
            except StorageTransientError as exc:
                if attempt == self._retry_attempts:
                    session.last_error = str(exc)
                    session.transition((SessionState.SUBMITTING,), SessionState.FAILED_RETRYABLE)
                    logger.error(
                        "Giving up on submitting exam %s for student %s after %d attempts.",
                        session.exam_id,
                        session.student_id,
                        attempt,
                    )
                    raise SubmissionFailedError(
                        "Failed to submit exam. Please try again."
                    ) from exc
                logger.warning(
                    "Submitting exam %s failed (attempt %d/%d): %s; retrying in %.1fs.",
                    session.exam_id,
                    attempt,
                    self._retry_attempts,
                    exc,
                    self._retry_delay,
                )
                await self._sleep(self._retry_delay)
        return False

    async def _load_existing_result(self) -> ExamResult | None:
        session = self._session
        try:
            record = await self._storage.get_result(session.exam_id, session.student_id)
        except StorageTransientError as exc:
            logger.warning("Could not read the stored result for exam %s: %s", session.exam_id, exc)
            return None
        return ExamResult.from_record(record) if record is not None else None

    async def _write_attempt_marker(self, status: SessionState, result: ExamResult | None = None) -> None:
        """Record the attempt for live dashboards; failures are only logged."""
        session = self._session
        marker = {
            "examId": session.exam_id,
            "studentId": session.student_id,
            "status": status.value,
            "startInstant": session.started_at.isoformat() if session.started_at else None,
            "presentationOrder": list(session.plan.order),
        }
        if status.is_final:
            submitted_at = result.submitted_at if result is not None else self._now()
            marker["submitInstant"] = submitted_at.isoformat()
            marker["autoSubmitted"] = result.auto_submitted if result is not None else None
        try:
            await self._storage.write_attempt_marker(session.exam_id, session.student_id, marker)
        except Exception:
            logger.warning("Could not record the attempt marker for exam %s.", session.exam_id, exc_info=True)

    def _stop_watching(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._monitor.stop()

    def _handle_warning(self, strike_count: int, remaining: int) -> None:
        self._session.strike_count = strike_count
        self._listener.on_warning(strike_count, remaining)

    def _handle_limit_exceeded(self, strike_count: int) -> None:
        self._session.strike_count = strike_count
        self._spawn(self._submit_safely(SubmitTrigger.FORCED))

    async def _handle_time_expired(self) -> None:
        await self._submit_safely(SubmitTrigger.AUTO)

    async def _submit_safely(self, trigger: SubmitTrigger) -> None:
        try:
            await self.submit(trigger)
        except (SubmissionFailedError, ConfigurationError) as exc:
            self._listener.on_submission_failed(exc)

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
