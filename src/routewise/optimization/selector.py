"""
Accuracy-cost provider selection.

Level-1 tasks take the most accurate candidate. Level-2 tasks take the
cheapest candidate whose accuracy is within N percentage points of the
best candidate, with free candidates ahead of any paid one.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import structlog

from routewise.core.errors import NoEligibleProviderError
from routewise.core.models import ProviderCandidate, TaskLevel

logger = structlog.get_logger()

DEFAULT_THRESHOLD_PERCENT = 5.0


def _level1_key(c: ProviderCandidate) -> tuple:
    return (-c.accuracy, c.latency_ms, c.cost_per_unit, c.identifier)


def _level2_key(c: ProviderCandidate) -> tuple:
    return (c.cost_per_unit > 0, c.cost_per_unit, c.latency_ms, c.identifier)


class AccuracyCostSelector:
    """
    Picks one provider from a candidate list.

    Accuracy overrides published by the evaluation registry take precedence
    over the accuracy carried by each candidate.
    """

    def __init__(self, threshold_percent: float = DEFAULT_THRESHOLD_PERCENT):
        if threshold_percent < 0:
            raise ValueError("Accuracy threshold must be non-negative")
        self.threshold_percent = threshold_percent
        self._accuracy_overrides: dict[str, float] = {}

    def update_accuracy(self, identifier: str, accuracy: float) -> None:
        """Set the measured accuracy (0-100) for ``provider/model``."""
        if not 0 <= accuracy <= 100:
            raise ValueError(f"Accuracy must be within 0-100, got {accuracy}")
        self._accuracy_overrides[identifier] = accuracy

    def update_accuracies(self, scores: Mapping[str, float]) -> None:
        for identifier, accuracy in scores.items():
            self.update_accuracy(identifier, accuracy)

    @property
    def accuracy_overrides(self) -> dict[str, float]:
        return dict(self._accuracy_overrides)

    def apply_overrides(self, candidates: Iterable[ProviderCandidate]) -> list[ProviderCandidate]:
        result = []
        for c in candidates:
            measured = self._accuracy_overrides.get(c.identifier)
            result.append(c.with_accuracy(measured) if measured is not None else c)
        return result

    def rank(
        self,
        candidates: Iterable[ProviderCandidate],
        task_level: TaskLevel | str,
        threshold: float | None = None,
        require_no_retention: bool = False,
    ) -> list[ProviderCandidate]:
        """
        Order eligible candidates best-first.

        For level-2 tasks only candidates within the threshold are returned.

        Raises:
            ValueError: If ``threshold`` is negative.
            NoEligibleProviderError: If no candidate remains after filtering.
        """
        level = TaskLevel(task_level)
        threshold = self.threshold_percent if threshold is None else threshold
        if threshold < 0:
            raise ValueError("Accuracy threshold must be non-negative")

        pool = self.apply_overrides(candidates)
        if require_no_retention:
            pool = [c for c in pool if c.no_retention]

        if not pool:
            raise NoEligibleProviderError(
                "No eligible provider candidates",
                task_level=level.value,
                candidate_count=0,
            )

        if level == TaskLevel.LEVEL1:
            return sorted(pool, key=_level1_key)

        max_accuracy = max(c.accuracy for c in pool)
        floor = max_accuracy - threshold
        qualifying = [c for c in pool if c.accuracy >= floor]
        if not qualifying:
            raise NoEligibleProviderError(
                "No candidate within the accuracy threshold",
                task_level=level.value,
                candidate_count=len(pool),
            )
        return sorted(qualifying, key=_level2_key)

    def select(
        self,
        candidates: Iterable[ProviderCandidate],
        task_level: TaskLevel | str,
        threshold: float | None = None,
        require_no_retention: bool = False,
    ) -> ProviderCandidate:
        """Select the single best candidate. See ``rank``."""
        ranked = self.rank(candidates, task_level, threshold, require_no_retention)
        chosen = ranked[0]
        logger.debug(
            "Provider selected",
            provider=chosen.provider,
            model=chosen.model,
            accuracy=chosen.accuracy,
            cost_per_unit=chosen.cost_per_unit,
            task_level=TaskLevel(task_level).value,
        )
        return chosen
