"""FastAPI server exposing exam sessions to the student and admin pages."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
import uvicorn

from exam_app.constants.about import APP_NAME, APP_VERSION
from exam_app.constants.exam_constants import WARNING_MESSAGE_TEMPLATE
from exam_app.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_app.core.errors import (
    AlreadySubmittedError,
    ConfigurationError,
    ExamError,
    ExamExpiredError,
    ExamNotFoundError,
    IncompleteAnswersError,
    IneligibleError,
    InvalidSessionStateError,
    SessionNotFoundError,
    StorageTransientError,
    SubmissionFailedError,
)
from exam_app.core.exam_manager import ExamManager
from exam_app.core.markdown_math_renderer import renderer
from exam_app.core.models import ExamResult, QuestionType, StudentContext
from exam_app.core.services.exam_session import ExamSession, SessionListener
from exam_app.core.services.integrity_monitor import EnvironmentSignal, KeyCombo, SignalKind
from exam_app.core.services.session_clock import format_remaining

logger = logging.getLogger(__name__)


class StartSessionPayload(BaseModel):
    """Payload schema for starting an attempt."""

    exam_id: str
    auth_uid: str


class AnswerPayload(BaseModel):
    value: str


class SignalPayload(BaseModel):
    """Environment signal reported by the student page."""

    kind: SignalKind
    key: str | None = None
    alt: bool = False
    ctrl: bool = False
    meta: bool = False
    at: datetime | None = None


class SessionEventLog:
    """Collects listener events so polling clients can read them."""

    def __init__(self, strike_limit: int) -> None:
        self.strike_limit = strike_limit
        self.events: list[dict[str, object]] = []

    def listener(self) -> SessionListener:
        return SessionListener(
            on_warning=self._on_warning,
            on_terminated=self._on_terminated,
            on_submitted=self._on_submitted,
            on_submission_failed=self._on_submission_failed,
        )

    def _on_warning(self, strike_count: int, remaining: int) -> None:
        self.events.append(
            {
                "type": "warning",
                "strike_count": strike_count,
                "remaining_attempts": remaining,
                "message": WARNING_MESSAGE_TEMPLATE.format(count=strike_count, limit=self.strike_limit),
            }
        )

    def _on_terminated(self) -> None:
        self.events.append({"type": "terminated"})

    def _on_submitted(self, result: ExamResult) -> None:
        self.events.append({"type": "submitted", "score_percent": result.score_percent})

    def _on_submission_failed(self, error: Exception) -> None:
        self.events.append({"type": "submission_failed", "message": str(error)})


def _http_error(exc: ExamError) -> HTTPException:
    if isinstance(exc, (ExamNotFoundError, SessionNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, IneligibleError):
        return HTTPException(status_code=403, detail=exc.reason)
    if isinstance(exc, ExamExpiredError):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, IncompleteAnswersError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (InvalidSessionStateError, AlreadySubmittedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (SubmissionFailedError, StorageTransientError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _serialize_session(session: ExamSession, manager: ExamManager, log: SessionEventLog | None) -> dict[str, object]:
    remaining = manager.remaining_seconds(session.id)
    questions = []
    for presentation_index, original_index, question in session.presented_questions():
        questions.append(
            {
                "index": presentation_index,
                "type": question.question_type.value,
                "question_html": renderer.render_fragment(question.text),
                "options": [
                    {"value": option, "label_html": renderer.render_inline(option)}
                    for option in question.options
                ]
                if question.question_type is QuestionType.MULTIPLE_CHOICE
                else [],
                "points": question.points,
                "answer": session.answers.get_answer(original_index),
            }
        )
    return {
        "session_id": session.id,
        "exam_id": session.exam_id,
        "exam_title": session.exam.title,
        "state": session.state.value,
        "remaining_seconds": remaining,
        "remaining_display": format_remaining(remaining),
        "total_marks": session.exam.total_points,
        "strike_count": session.strike_count,
        "all_answered": session.answers.all_answered(),
        "questions": questions,
        "result": session.result.to_record() if session.result is not None else None,
        "events": list(log.events) if log is not None else [],
    }


def _get_exam_manager_dependency(exam_manager: ExamManager):
    def dependency() -> ExamManager:
        return exam_manager

    return dependency


def create_api_app(exam_manager: ExamManager) -> FastAPI:
    """Create a FastAPI application wired to the provided exam manager."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        exam_manager.shutdown()

    app = FastAPI(title=f"{APP_NAME} API", version=APP_VERSION, lifespan=lifespan)
    manager_dep = _get_exam_manager_dependency(exam_manager)
    event_logs: dict[str, SessionEventLog] = {}

    @app.post("/sessions", status_code=201)
    async def start_session(
        payload: StartSessionPayload,
        manager: ExamManager = Depends(manager_dep),
    ) -> dict[str, object]:
        log = SessionEventLog(manager.config.strike_limit)
        try:
            session = await manager.start_session(
                payload.exam_id,
                StudentContext(auth_uid=payload.auth_uid),
                listener=log.listener(),
            )
        except ExamError as exc:
            raise _http_error(exc) from exc
        event_logs.setdefault(session.id, log)
        return _serialize_session(session, manager, event_logs[session.id])

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, manager: ExamManager = Depends(manager_dep)) -> dict[str, object]:
        try:
            session = manager.get_session(session_id)
        except ExamError as exc:
            raise _http_error(exc) from exc
        return _serialize_session(session, manager, event_logs.get(session_id))

    @app.delete("/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str, manager: ExamManager = Depends(manager_dep)) -> None:
        try:
            manager.close_session(session_id)
        except ExamError as exc:
            raise _http_error(exc) from exc
        event_logs.pop(session_id, None)

    @app.put("/sessions/{session_id}/answers/{index}")
    async def record_answer(
        session_id: str,
        index: int,
        payload: AnswerPayload,
        manager: ExamManager = Depends(manager_dep),
    ) -> dict[str, object]:
        try:
            manager.record_answer(session_id, index, payload.value)
            session = manager.get_session(session_id)
        except IndexError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ExamError as exc:
            raise _http_error(exc) from exc
        return {
            "index": index,
            "all_answered": session.answers.all_answered(),
            "unanswered": session.answers.unanswered_count(),
        }

    @app.post("/sessions/{session_id}/submit")
    async def submit(session_id: str, manager: ExamManager = Depends(manager_dep)) -> dict[str, object]:
        try:
            result = await manager.request_manual_submit(session_id)
            session = manager.get_session(session_id)
        except ExamError as exc:
            raise _http_error(exc) from exc
        return {
            "state": session.state.value,
            "result": result.to_record() if result is not None else None,
        }

    @app.post("/sessions/{session_id}/signals")
    async def report_signal(
        session_id: str,
        payload: SignalPayload,
        manager: ExamManager = Depends(manager_dep),
    ) -> dict[str, object]:
        key = None
        if payload.key is not None:
            key = KeyCombo(key=payload.key, alt=payload.alt, ctrl=payload.ctrl, meta=payload.meta)
        signal = EnvironmentSignal(
            kind=payload.kind,
            at=payload.at or datetime.now(timezone.utc),
            key=key,
        )
        try:
            manager.report_signal(session_id, signal)
            coordinator = manager.get_coordinator(session_id)
            await coordinator.wait_background()
        except ExamError as exc:
            raise _http_error(exc) from exc
        session = coordinator.session
        return {"state": session.state.value, "strike_count": session.strike_count}

    @app.get("/exams/{exam_id}/results")
    async def list_results(exam_id: str, manager: ExamManager = Depends(manager_dep)) -> list[dict[str, object]]:
        return [result.to_record() for result in await manager.query_results(exam_id)]

    @app.post("/exams/{exam_id}/release")
    async def release_results(exam_id: str, manager: ExamManager = Depends(manager_dep)) -> dict[str, object]:
        return {"exam_id": exam_id, "released": await manager.release_results(exam_id)}

    @app.post("/exams/close-expired")
    async def close_expired(manager: ExamManager = Depends(manager_dep)) -> dict[str, object]:
        return {"closed": await manager.close_expired_exams()}

    return app


def run_api_server(
    exam_manager: ExamManager,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_level: str = "info",
) -> None:
    """Serve the API on the current thread until interrupted."""
    app = create_api_app(exam_manager)
    config = uvicorn.Config(app=app, host=host, port=port, log_level=log_level.lower())
    server = uvicorn.Server(config)
    logger.info("Serving %s API on http://%s:%d/", APP_NAME, host, port)
    server.run()
