import asyncio
from datetime import timedelta

import pytest

from conftest import START, FlakyStorage, make_exam, make_student
from exam_app.core.errors import (
    DuplicateSubmissionError,
    IncompleteAnswersError,
    InvalidSessionStateError,
    SubmissionFailedError,
)
from exam_app.core.models import PresentationPlan, SessionState, SubmitTrigger
from exam_app.core.services.exam_session import ExamSession, SessionListener
from exam_app.core.services.integrity_monitor import EnvironmentSignal, SignalKind, SyntheticSignalSource
from exam_app.core.services.submission_coordinator import SubmissionCoordinator, lock_key_for
from exam_app.core.storage import InMemoryExamStorage


class ListenerRecorder:
    def __init__(self):
        self.warnings = []
        self.terminated = 0
        self.submitted = []
        self.failures = []

    def listener(self):
        return SessionListener(
            on_warning=lambda count, remaining: self.warnings.append((count, remaining)),
            on_terminated=self._terminated,
            on_submitted=self.submitted.append,
            on_submission_failed=self.failures.append,
        )

    def _terminated(self):
        self.terminated += 1


@pytest.fixture
def build(clock, recording_sleep):
    def factory(storage=None, plan=(2, 0, 1), points=(1, 2, 3)):
        exam = make_exam(points=points)
        session = ExamSession(exam, make_student(), PresentationPlan(order=plan))
        source = SyntheticSignalSource()
        recorder = ListenerRecorder()
        coordinator = SubmissionCoordinator(
            session,
            storage or InMemoryExamStorage(),
            source,
            recorder.listener(),
            tick_interval_seconds=3600,
            now=clock,
            sleep=recording_sleep,
        )
        return coordinator, source, recorder

    return factory


def answer_everything(session):
    # Presentation order (2, 0, 1): slot 0 shows original question 2.
    session.record_answer(0, "3")
    session.record_answer(1, " Paris")
    session.record_answer(2, "Pacific")


def violation(kind, seconds):
    return EnvironmentSignal(kind=kind, at=START + timedelta(seconds=seconds))


@pytest.mark.anyio
async def test_start_moves_to_in_progress_and_writes_marker(build, clock):
    storage = InMemoryExamStorage()
    coordinator, source, _ = build(storage=storage)

    await coordinator.start()

    session = coordinator.session
    assert session.state is SessionState.IN_PROGRESS
    assert session.started_at == START
    assert source.listener_count == 1
    marker = storage.get_attempt_marker("geo-101", "01700000001")
    assert marker["status"] == "in_progress"
    assert marker["presentationOrder"] == [2, 0, 1]
    with pytest.raises(InvalidSessionStateError):
        await coordinator.start()


@pytest.mark.anyio
async def test_marker_failure_does_not_block_start(build):
    storage = FlakyStorage(failures=0)
    storage.fail_markers = True
    coordinator, _, _ = build(storage=storage)

    await coordinator.start()

    assert coordinator.session.state is SessionState.IN_PROGRESS


@pytest.mark.anyio
async def test_answers_land_in_original_index_slots(build):
    coordinator, _, _ = build(plan=(2, 0, 1))
    await coordinator.start()

    original = coordinator.session.record_answer(0, "3")

    assert original == 2
    assert coordinator.session.answers.snapshot() == {2: "3"}


@pytest.mark.anyio
async def test_manual_submit_with_missing_answers_is_rejected(build):
    coordinator, _, recorder = build()
    await coordinator.start()
    coordinator.session.record_answer(0, "3")

    with pytest.raises(IncompleteAnswersError) as excinfo:
        await coordinator.submit(SubmitTrigger.MANUAL)

    assert excinfo.value.remaining == 2
    assert coordinator.session.state is SessionState.IN_PROGRESS
    assert recorder.submitted == []


@pytest.mark.anyio
async def test_manual_submit_commits_result_and_lock(build, clock):
    storage = InMemoryExamStorage()
    coordinator, source, recorder = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)
    clock.advance(125)

    result = await coordinator.submit(SubmitTrigger.MANUAL)

    assert result.score_percent == 100
    assert result.points_earned == result.points_possible == 6
    assert result.answers == {0: "paris", 1: "Pacific", 2: "3"}
    assert result.time_taken_seconds == 125
    assert not result.auto_submitted
    assert not result.visible_to_student
    assert coordinator.session.state is SessionState.SUBMITTED
    assert recorder.submitted == [result]
    assert storage.has_lock(lock_key_for("geo-101", "01700000001"))
    assert len(await storage.query_results_for_exam("geo-101")) == 1
    assert source.listener_count == 0
    assert not coordinator.timer.is_running


@pytest.mark.anyio
async def test_duplicate_triggers_persist_exactly_one_result(build):
    storage = InMemoryExamStorage()
    coordinator, _, recorder = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)

    first, second = await asyncio.gather(
        coordinator.submit(SubmitTrigger.MANUAL),
        coordinator.submit(SubmitTrigger.AUTO),
    )

    assert first is not None and second is None
    assert len(await storage.query_results_for_exam("geo-101")) == 1
    assert len(recorder.submitted) == 1

    assert await coordinator.submit(SubmitTrigger.MANUAL) is first


@pytest.mark.anyio
async def test_auto_submit_scores_partial_answers(build):
    coordinator, _, _ = build(points=(1, 2, 3))
    await coordinator.start()
    coordinator.session.record_answer(1, "paris")
    coordinator.session.record_answer(0, "3")

    result = await coordinator.submit(SubmitTrigger.AUTO)

    assert (result.points_earned, result.points_possible, result.score_percent) == (4, 6, 67)
    assert result.auto_submitted
    assert coordinator.session.state is SessionState.SUBMITTED


@pytest.mark.anyio
async def test_timer_expiry_auto_submits(build, clock):
    storage = InMemoryExamStorage()
    coordinator, _, recorder = build(storage=storage)
    await coordinator.start()
    coordinator.session.record_answer(1, "paris")
    clock.advance(30 * 60)

    await coordinator.timer.tick()

    assert coordinator.session.state is SessionState.SUBMITTED
    assert recorder.submitted[0].trigger is SubmitTrigger.AUTO
    assert recorder.submitted[0].points_earned == 1
    assert coordinator.remaining_seconds() == 0


@pytest.mark.anyio
async def test_strike_limit_terminates_with_partial_result(build):
    storage = InMemoryExamStorage()
    coordinator, source, recorder = build(storage=storage)
    await coordinator.start()
    coordinator.session.record_answer(0, "3")

    for second in (10, 20, 30, 40):
        source.emit(violation(SignalKind.NAVIGATION, second))
    await coordinator.wait_background()

    session = coordinator.session
    assert recorder.warnings == [(1, 2), (2, 1), (3, 0)]
    assert session.state is SessionState.TERMINATED
    assert session.strike_count == 4
    assert recorder.terminated == 1
    result = recorder.submitted[0]
    assert result.trigger is SubmitTrigger.FORCED
    assert result.strike_count == 4
    assert result.points_earned == 3
    assert source.listener_count == 0
    assert len(await storage.query_results_for_exam("geo-101")) == 1
    marker = storage.get_attempt_marker("geo-101", "01700000001")
    assert marker["status"] == "terminated"
    assert marker["autoSubmitted"] is True


@pytest.mark.anyio
async def test_timeout_and_strike_limit_in_same_turn_submit_once(build, clock):
    storage = InMemoryExamStorage()
    coordinator, source, recorder = build(storage=storage)
    await coordinator.start()
    for second in (10, 20, 30):
        source.emit(violation(SignalKind.NAVIGATION, second))
    clock.advance(30 * 60)

    source.emit(violation(SignalKind.NAVIGATION, 40))
    await coordinator.timer.tick()
    await coordinator.wait_background()

    assert len(await storage.query_results_for_exam("geo-101")) == 1
    assert len(recorder.submitted) == 1


@pytest.mark.anyio
async def test_transient_failures_are_retried_with_fixed_backoff(build, recording_sleep):
    storage = FlakyStorage(failures=2)
    coordinator, _, _ = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)

    result = await coordinator.submit(SubmitTrigger.MANUAL)

    assert result is not None
    assert storage.commit_calls == 3
    assert recording_sleep.calls == [3.0, 3.0]
    assert coordinator.session.state is SessionState.SUBMITTED


@pytest.mark.anyio
async def test_exhausted_retries_leave_session_retryable(build):
    storage = FlakyStorage(failures=10)
    coordinator, _, _ = build(storage=storage)
    await coordinator.start()
    coordinator.session.record_answer(1, "paris")

    with pytest.raises(SubmissionFailedError):
        await coordinator.submit(SubmitTrigger.AUTO)

    assert coordinator.session.state is SessionState.FAILED_RETRYABLE
    assert storage.commit_calls == 3

    storage.failures = 0
    result = await coordinator.retry_submission()

    assert result.trigger is SubmitTrigger.AUTO
    assert coordinator.session.state is SessionState.SUBMITTED
    assert len(await storage.query_results_for_exam("geo-101")) == 1


@pytest.mark.anyio
async def test_failed_auto_submit_is_reported_to_listener(build, clock):
    storage = FlakyStorage(failures=10)
    coordinator, _, recorder = build(storage=storage)
    await coordinator.start()
    clock.advance(30 * 60)

    await coordinator.timer.tick()

    assert coordinator.session.state is SessionState.FAILED_RETRYABLE
    assert len(recorder.failures) == 1


@pytest.mark.anyio
async def test_submission_from_another_tab_is_treated_as_done(build):
    storage = InMemoryExamStorage()
    coordinator, _, recorder = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)

    other_tab, _, _ = build(storage=storage)
    await other_tab.start()
    other_tab.session.record_answer(1, "paris")
    earlier = await other_tab.submit(SubmitTrigger.AUTO)

    result = await coordinator.submit(SubmitTrigger.MANUAL)

    assert coordinator.session.state is SessionState.SUBMITTED
    assert result.score_percent == earlier.score_percent
    assert len(await storage.query_results_for_exam("geo-101")) == 1
    assert storage.get_attempt_marker("geo-101", "01700000001")["status"] == "submitted"


@pytest.mark.anyio
async def test_answers_are_frozen_after_submission(build):
    coordinator, _, _ = build()
    await coordinator.start()
    await coordinator.submit(SubmitTrigger.AUTO)

    with pytest.raises(InvalidSessionStateError):
        coordinator.session.record_answer(0, "3")


@pytest.mark.anyio
async def test_remaining_seconds_follow_the_clock(build, clock):
    coordinator, _, _ = build()
    assert coordinator.remaining_seconds() == 1800

    await coordinator.start()
    clock.advance(61)

    assert coordinator.remaining_seconds() == 1739


@pytest.mark.anyio
async def test_submit_marks_the_attempt_finished(build, clock):
    storage = InMemoryExamStorage()
    coordinator, _, _ = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)
    clock.advance(300)

    await coordinator.submit(SubmitTrigger.MANUAL)

    marker = storage.get_attempt_marker("geo-101", "01700000001")
    assert marker["status"] == "submitted"
    assert marker["startInstant"] == START.isoformat()
    assert marker["submitInstant"] == (START + timedelta(seconds=300)).isoformat()
    assert marker["autoSubmitted"] is False
    assert marker["presentationOrder"] == [2, 0, 1]


@pytest.mark.anyio
async def test_final_marker_failure_does_not_undo_submission(build):
    storage = FlakyStorage(failures=0)
    coordinator, _, recorder = build(storage=storage)
    await coordinator.start()
    answer_everything(coordinator.session)
    storage.fail_markers = True

    result = await coordinator.submit(SubmitTrigger.MANUAL)

    assert result.score_percent == 100
    assert coordinator.session.state is SessionState.SUBMITTED
    assert recorder.submitted == [result]


@pytest.mark.anyio
async def test_storage_refuses_a_second_lock():
    storage = InMemoryExamStorage()
    record = {"examId": "geo-101", "studentId": "01700000001", "scorePercent": 50}
    lock_key = lock_key_for("geo-101", "01700000001")
    await storage.commit_result(lock_key, {"studentId": "01700000001"}, record)

    with pytest.raises(DuplicateSubmissionError):
        await storage.commit_result(lock_key, {"studentId": "01700000001"}, dict(record, scorePercent=90))

    assert (await storage.get_result("geo-101", "01700000001"))["scorePercent"] == 50
