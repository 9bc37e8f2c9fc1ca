"""Scoring of a session's answers against the exam's answer key."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from exam_app.core.errors import ConfigurationError
from exam_app.core.models import ExamQuestion, ScoreBreakdown
from exam_app.core.services.answer_store import normalize_answer


def score(questions: Sequence[ExamQuestion], answers: Mapping[int, str]) -> ScoreBreakdown:
    """Return points earned, points possible and the rounded percentage.

    ``answers`` is keyed by original question index; missing keys score zero.
    """
    points_earned = 0
    points_possible = 0
    for index, question in enumerate(questions):
        points_possible += question.points
        answer = answers.get(index)
        if answer is None:
            continue
        expected = normalize_answer(question, question.correct_answer)
        if normalize_answer(question, answer) == expected:
            points_earned += question.points

    if points_possible <= 0:
        raise ConfigurationError("Invalid exam configuration: total points cannot be 0.")

    return ScoreBreakdown(
        points_earned=points_earned,
        points_possible=points_possible,
        percent=_round_half_up_percent(points_earned, points_possible),
    )


def _round_half_up_percent(earned: int, possible: int) -> int:
    # Integer arithmetic so 0.5 always rounds up, with no float error.
    return (200 * earned + possible) // (2 * possible)
