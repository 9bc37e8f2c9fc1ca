"""Storage interface consumed by the exam engine.

Architecture note:
    The production deployment keeps exams, students and results in a hosted
    document database. The engine never talks to it directly; it depends on
    the narrow ``ExamStorage`` protocol below, injected into the manager.
    Every operation is atomic at single-document granularity, except
    ``commit_result`` which couples the submission lock and the result write
    in one transaction: either both documents exist afterwards or neither.

    ``InMemoryExamStorage`` is the reference backend used by the API server
    in development and by the test suite.
"""

from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Protocol

from exam_app.core.errors import DuplicateSubmissionError

Document = dict[str, Any]


class ExamStorage(Protocol):
    async def get_exam(self, exam_id: str) -> Document | None: ...

    async def query_exams(self, status: str | None = None) -> dict[str, Document]: ...

    async def set_exam_status(self, exam_id: str, status: str) -> None: ...

    async def get_student_profile(self, auth_uid: str) -> Document | None: ...

    async def write_attempt_marker(self, exam_id: str, student_id: str, marker: Document) -> None: ...

    async def commit_result(self, lock_key: str, lock_record: Document, result_record: Document) -> None:
        """Create the lock and the result together.

        Raises ``DuplicateSubmissionError``, writing nothing, when the lock
        already exists.
        """
        ...

    async def get_result(self, exam_id: str, student_id: str) -> Document | None: ...

    async def query_results_for_exam(self, exam_id: str) -> list[Document]: ...

    async def release_results(self, exam_id: str) -> int: ...


class InMemoryExamStorage:
    """Dictionary-backed storage with the same atomicity guarantees."""

    def __init__(
        self,
        exams: dict[str, Document] | None = None,
        students: dict[str, Document] | None = None,
    ) -> None:
        self._exams: dict[str, Document] = copy.deepcopy(exams or {})
        self._students: dict[str, Document] = copy.deepcopy(students or {})
        self._locks: dict[str, Document] = {}
        self._results: dict[tuple[str, str], Document] = {}
        self._attempts: dict[tuple[str, str], Document] = {}
        self._transaction_lock = asyncio.Lock()

    @classmethod
    def from_seed_file(cls, file_path: Path) -> "InMemoryExamStorage":
        """Build a store from a JSON file with ``exams`` and ``students`` maps."""
        payload = json.loads(file_path.read_text(encoding="utf-8"))
        return cls(exams=payload.get("exams", {}), students=payload.get("students", {}))

    async def get_exam(self, exam_id: str) -> Document | None:
        exam = self._exams.get(exam_id)
        return copy.deepcopy(exam) if exam is not None else None

    async def query_exams(self, status: str | None = None) -> dict[str, Document]:
        return {
            exam_id: copy.deepcopy(exam)
            for exam_id, exam in self._exams.items()
            if status is None or exam.get("status") == status
        }

    async def set_exam_status(self, exam_id: str, status: str) -> None:
        if exam_id not in self._exams:
            raise KeyError(exam_id)
        self._exams[exam_id]["status"] = status

    async def get_student_profile(self, auth_uid: str) -> Document | None:
        student = self._students.get(auth_uid)
        return copy.deepcopy(student) if student is not None else None

    async def write_attempt_marker(self, exam_id: str, student_id: str, marker: Document) -> None:
        self._attempts[(exam_id, student_id)] = copy.deepcopy(marker)

    def get_attempt_marker(self, exam_id: str, student_id: str) -> Document | None:
        return copy.deepcopy(self._attempts.get((exam_id, student_id)))

    async def commit_result(self, lock_key: str, lock_record: Document, result_record: Document) -> None:
        async with self._transaction_lock:
            if lock_key in self._locks:
                raise DuplicateSubmissionError(f"Submission lock {lock_key!r} already exists.")
            # Yield inside the transaction so concurrent commits really race.
            await asyncio.sleep(0)
            key = (str(result_record["examId"]), str(result_record["studentId"]))
            self._locks[lock_key] = copy.deepcopy(lock_record)
            self._results[key] = copy.deepcopy(result_record)

    def has_lock(self, lock_key: str) -> bool:
        return lock_key in self._locks

    async def get_result(self, exam_id: str, student_id: str) -> Document | None:
        result = self._results.get((exam_id, student_id))
        return copy.deepcopy(result) if result is not None else None

    async def query_results_for_exam(self, exam_id: str) -> list[Document]:
        return [
            copy.deepcopy(result)
            for (result_exam_id, _), result in self._results.items()
            if result_exam_id == exam_id
        ]

    async def release_results(self, exam_id: str) -> int:
        async with self._transaction_lock:
            released = 0
            for (result_exam_id, _), result in self._results.items():
                if result_exam_id == exam_id:
                    result["visibleToStudent"] = True
                    released += 1
            if exam_id in self._exams:
                self._exams[exam_id]["status"] = "completed"
                self._exams[exam_id]["resultsReleased"] = True
            return released
