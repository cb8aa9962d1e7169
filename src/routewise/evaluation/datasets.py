"""
Evaluation datasets and dataset stores.

A dataset is a set of golden samples: an input, the expected output and the
key points a correct answer must mention.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

import structlog

from routewise.core.errors import DatasetLoadError

logger = structlog.get_logger()


@dataclass(frozen=True)
class EvaluationSample:
    """A golden input with its expected key points."""

    id: str
    prompt: str
    key_points: tuple[str, ...]
    category: str = "general"
    difficulty: str = "medium"
    request_type: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    expected_response: Any = None
    reasoning: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "key_points": list(self.key_points),
            "category": self.category,
            "difficulty": self.difficulty,
            "request_type": self.request_type,
            "context": self.context,
            "expected_response": self.expected_response,
            "reasoning": self.reasoning,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationSample":
        return cls(
            id=data["id"],
            prompt=data["prompt"],
            key_points=tuple(data.get("key_points", [])),
            category=data.get("category", "general"),
            difficulty=data.get("difficulty", "medium"),
            request_type=data.get("request_type"),
            context=data.get("context", {}),
            expected_response=data.get("expected_response"),
            reasoning=data.get("reasoning"),
            tags=tuple(data.get("tags", [])),
        )


@dataclass(frozen=True)
class EvaluationDataset:
    """A named, versioned collection of samples."""

    id: str
    name: str
    samples: tuple[EvaluationSample, ...]
    description: str = ""
    version: str = "1.0.0"
    domain: str = "health"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def categories(self) -> list[str]:
        return sorted({s.category for s in self.samples})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "domain": self.domain,
            "created_at": self.created_at.isoformat(),
            "samples": [s.to_dict() for s in self.samples],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationDataset":
        created_at = data.get("created_at")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            version=data.get("version", "1.0.0"),
            domain=data.get("domain", "health"),
            created_at=(
                datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc)
            ),
            samples=tuple(EvaluationSample.from_dict(s) for s in data.get("samples", [])),
        )


class DatasetStore(Protocol):
    def load(self, dataset_id: str) -> EvaluationDataset:
        """Load a dataset. Raises DatasetLoadError on failure."""
        ...

    def save(self, dataset: EvaluationDataset) -> None:
        ...

    def list_datasets(self) -> list[str]:
        ...


class FileDatasetStore:
    """One JSON file per dataset under a directory."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _file(self, dataset_id: str) -> Path:
        if not dataset_id or "/" in dataset_id or "\\" in dataset_id or dataset_id.startswith("."):
            raise DatasetLoadError(f"Invalid dataset id {dataset_id!r}", dataset_id)
        return self.path / f"{dataset_id}.json"

    def load(self, dataset_id: str) -> EvaluationDataset:
        file = self._file(dataset_id)
        try:
            with open(file, encoding="utf-8") as f:
                data = json.load(f)
            return EvaluationDataset.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load dataset", dataset_id=dataset_id, error=str(e))
            raise DatasetLoadError(f"Failed to load dataset {dataset_id}: {e}", dataset_id) from e

    def save(self, dataset: EvaluationDataset) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        with open(self._file(dataset.id), "w", encoding="utf-8") as f:
            json.dump(dataset.to_dict(), f, indent=2)
        logger.info("Saved evaluation dataset", dataset_id=dataset.id, samples=len(dataset.samples))

    def list_datasets(self) -> list[str]:
        if not self.path.is_dir():
            return []
        return sorted(p.stem for p in self.path.glob("*.json"))


class InMemoryDatasetStore:
    def __init__(self, datasets: list[EvaluationDataset] | None = None):
        self._lock = Lock()
        self._datasets = {d.id: d for d in datasets or []}

    def load(self, dataset_id: str) -> EvaluationDataset:
        with self._lock:
            dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise DatasetLoadError(f"Dataset {dataset_id} not found", dataset_id)
        return dataset

    def save(self, dataset: EvaluationDataset) -> None:
        with self._lock:
            self._datasets[dataset.id] = dataset

    def list_datasets(self) -> list[str]:
        with self._lock:
            return sorted(self._datasets)
