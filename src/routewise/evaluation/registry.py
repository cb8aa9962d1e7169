"""
Benchmark evaluation of providers.

Runs a provider against a dataset, scores every sample by key-point
coverage and aggregates overall and per-category accuracy. Sample failures
are recorded in the result; only dataset load failures reach the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Awaitable, Callable, Iterable, Protocol

import structlog

from routewise.core.errors import EvaluationExecutionError
from routewise.core.models import ProviderCandidate
from routewise.evaluation.datasets import DatasetStore, EvaluationDataset, EvaluationSample
from routewise.optimization.selector import AccuracyCostSelector
from routewise.utils.clock import Clock, SystemClock

logger = structlog.get_logger()

ProviderInvoker = Callable[[EvaluationSample], "Any | Awaitable[Any]"]

DEFAULT_PASS_THRESHOLD = 0.7


class FailureType(str, Enum):
    """Coarse classification of a failed sample."""

    NO_RESPONSE = "no_response"
    FORMAT_ERROR = "format_error"
    CONTENT_MISMATCH = "content_mismatch"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class FailedSample:
    sample_id: str
    error_type: FailureType
    description: str
    score: float = 0.0
    actual_output: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_id": self.sample_id,
            "error_type": self.error_type.value,
            "description": self.description,
            "score": self.score,
            "actual_output": self.actual_output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailedSample":
        return cls(
            sample_id=data["sample_id"],
            error_type=FailureType(data["error_type"]),
            description=data.get("description", ""),
            score=data.get("score", 0.0),
            actual_output=data.get("actual_output"),
        )


@dataclass(frozen=True)
class CategoryResult:
    category: str
    accuracy: float
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "accuracy": self.accuracy, "sample_count": self.sample_count}


@dataclass(frozen=True)
class EvaluationResult:
    """Accuracy of one provider/model on one dataset. Never mutated."""

    dataset_id: str
    provider: str
    model: str
    overall_accuracy: float  # 0-1
    sample_count: int
    category_results: tuple[CategoryResult, ...] = ()
    failed_samples: tuple[FailedSample, ...] = ()
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identifier(self) -> str:
        return f"{self.provider}/{self.model}"

    @property
    def accuracy_percent(self) -> float:
        return self.overall_accuracy * 100

    def category_accuracy(self, category: str) -> float | None:
        for result in self.category_results:
            if result.category == category:
                return result.accuracy
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "dataset_id": self.dataset_id,
            "provider": self.provider,
            "model": self.model,
            "overall_accuracy": self.overall_accuracy,
            "sample_count": self.sample_count,
            "category_results": [c.to_dict() for c in self.category_results],
            "failed_samples": [f.to_dict() for f in self.failed_samples],
            "evaluated_at": self.evaluated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationResult":
        """Create from dictionary."""
        return cls(
            dataset_id=data["dataset_id"],
            provider=data["provider"],
            model=data["model"],
            overall_accuracy=data["overall_accuracy"],
            sample_count=data.get("sample_count", 0),
            category_results=tuple(
                CategoryResult(**c) for c in data.get("category_results", [])
            ),
            failed_samples=tuple(
                FailedSample.from_dict(f) for f in data.get("failed_samples", [])
            ),
            evaluated_at=datetime.fromisoformat(data["evaluated_at"]),
        )


def score_sample(sample: EvaluationSample, actual: Any) -> float:
    """Fraction of the sample's key points found in the serialized output."""
    if not actual or not sample.key_points:
        return 0.0
    text = json.dumps(actual, default=str, ensure_ascii=False).lower()
    covered = [p for p in sample.key_points if p.lower().replace("_", " ") in text]
    return len(covered) / len(sample.key_points)


def classify_failure(actual: Any) -> FailureType:
    if not actual:
        return FailureType.NO_RESPONSE
    if not isinstance(actual, (dict, list)):
        return FailureType.FORMAT_ERROR
    return FailureType.CONTENT_MISMATCH


class ResultStore(Protocol):
    def append(self, result: EvaluationResult) -> None:
        ...

    def history(self) -> list[EvaluationResult]:
        ...


class InMemoryResultStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._results: list[EvaluationResult] = []

    def append(self, result: EvaluationResult) -> None:
        with self._lock:
            self._results.append(result)

    def history(self) -> list[EvaluationResult]:
        with self._lock:
            return list(self._results)


class JsonLinesResultStore:
    """Append-only audit log, one JSON result per line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = Lock()

    def append(self, result: EvaluationResult) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(result.to_dict(), default=str) + "\n")

    def history(self) -> list[EvaluationResult]:
        """Replay the log. Unreadable lines are logged and skipped."""
        with self._lock:
            if not self.path.exists():
                return []
            results = []
            with open(self.path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        results.append(EvaluationResult.from_dict(json.loads(line)))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning(
                            "Skipping unreadable evaluation result",
                            path=str(self.path),
                            line=lineno,
                            error=str(e),
                        )
            return results


class EvaluationRegistry:
    """
    Holds datasets and evaluation results, and feeds measured accuracy to
    the selector.
    """

    def __init__(
        self,
        datasets: DatasetStore,
        results: ResultStore | None = None,
        selector: AccuracyCostSelector | None = None,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        clock: Clock | None = None,
    ):
        self._datasets = datasets
        self._results = results or InMemoryResultStore()
        self._selector = selector
        self._pass_threshold = pass_threshold
        self._clock = clock or SystemClock()
        self._latest: dict[str, EvaluationResult] = {}
        for result in self._results.history():
            self._remember(result)

    @property
    def datasets(self) -> DatasetStore:
        return self._datasets

    def list_datasets(self) -> list[str]:
        return self._datasets.list_datasets()

    async def evaluate(
        self,
        dataset: EvaluationDataset | str,
        provider: str,
        model: str,
        invoke: ProviderInvoker,
    ) -> EvaluationResult:
        """
        Run ``invoke`` over every sample of ``dataset``.

        Raises:
            DatasetLoadError: If the dataset id cannot be loaded.
        """
        if isinstance(dataset, str):
            loop = asyncio.get_running_loop()
            dataset = await loop.run_in_executor(None, self._datasets.load, dataset)

        logger.info(
            "Starting evaluation",
            dataset_id=dataset.id,
            provider=provider,
            model=model,
            samples=len(dataset.samples),
        )

        total = 0.0
        categories: dict[str, list[float]] = {}
        failures: list[FailedSample] = []

        for sample in dataset.samples:
            try:
                actual = await self._invoke(invoke, sample)
            except EvaluationExecutionError as e:
                logger.warning(
                    "Evaluation sample failed",
                    sample_id=e.sample_id,
                    provider=provider,
                    error=str(e),
                )
                categories.setdefault(sample.category, []).append(0.0)
                failures.append(FailedSample(
                    sample_id=sample.id,
                    error_type=FailureType.EXECUTION_ERROR,
                    description=str(e),
                ))
                continue

            score = score_sample(sample, actual)
            total += score
            categories.setdefault(sample.category, []).append(score)
            if score < self._pass_threshold:
                failures.append(FailedSample(
                    sample_id=sample.id,
                    error_type=classify_failure(actual),
                    description=(
                        "Provider returned no response" if not actual
                        else "Response did not meet expected accuracy criteria"
                    ),
                    score=score,
                    actual_output=actual,
                ))

        count = len(dataset.samples)
        result = EvaluationResult(
            dataset_id=dataset.id,
            provider=provider,
            model=model,
            overall_accuracy=total / count if count else 0.0,
            sample_count=count,
            category_results=tuple(
                CategoryResult(category=name, accuracy=sum(scores) / len(scores), sample_count=len(scores))
                for name, scores in sorted(categories.items())
            ),
            failed_samples=tuple(failures),
            evaluated_at=self._clock.now(),
        )

        self._results.append(result)
        self._remember(result)
        if self._selector is not None:
            self._selector.update_accuracy(result.identifier, result.accuracy_percent)

        logger.info(
            "Evaluation completed",
            dataset_id=dataset.id,
            provider=provider,
            model=model,
            accuracy=round(result.accuracy_percent, 2),
            failed=len(failures),
        )
        return result

    async def _invoke(self, invoke: ProviderInvoker, sample: EvaluationSample) -> Any:
        try:
            output = invoke(sample)
            if inspect.isawaitable(output):
                output = await output
            return output
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise EvaluationExecutionError(str(e) or type(e).__name__, sample.id) from e

    def _remember(self, result: EvaluationResult) -> None:
        current = self._latest.get(result.identifier)
        if current is None or result.evaluated_at >= current.evaluated_at:
            self._latest[result.identifier] = result

    def latest_accuracy(self) -> dict[str, float]:
        """Latest overall accuracy per provider/model, as a percentage."""
        return {key: r.accuracy_percent for key, r in self._latest.items()}

    def apply_to(self, candidates: Iterable[ProviderCandidate]) -> list[ProviderCandidate]:
        """Return candidates with measured accuracy replacing catalog values."""
        latest = self.latest_accuracy()
        return [
            c.with_accuracy(latest[c.identifier]) if c.identifier in latest else c
            for c in candidates
        ]

    def publish(self) -> None:
        """Push all latest accuracies to the selector."""
        if self._selector is not None:
            self._selector.update_accuracies(self.latest_accuracy())

    def history(
        self,
        provider: str | None = None,
        dataset_id: str | None = None,
        limit: int | None = None,
    ) -> list[EvaluationResult]:
        results = [
            r for r in self._results.history()
            if (provider is None or r.provider == provider)
            and (dataset_id is None or r.dataset_id == dataset_id)
        ]
        return results[-limit:] if limit else results
