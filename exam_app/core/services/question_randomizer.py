"""Service producing the order in which a student sees the questions."""

from __future__ import annotations

import random

from exam_app.core.models import PresentationPlan


class QuestionRandomizer:
    """Builds presentation plans once per session start."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def set_seed(self, seed: int | None) -> None:
        self._rng.seed(seed)

    def shuffle(self, question_count: int) -> PresentationPlan:
        """Return a uniformly random permutation of ``range(question_count)``.

        Fisher-Yates: walk from the last slot down to 1 and swap each slot
        with a uniformly chosen slot at or below it.
        """
        order = list(range(question_count))
        for i in range(question_count - 1, 0, -1):
            j = self._rng.randint(0, i)
            order[i], order[j] = order[j], order[i]
        return PresentationPlan(order=tuple(order))

    @staticmethod
    def identity(question_count: int) -> PresentationPlan:
        return PresentationPlan(order=tuple(range(question_count)))
