"""Provider benchmark evaluation."""

from routewise.evaluation.datasets import (
    EvaluationDataset,
    EvaluationSample,
    FileDatasetStore,
    InMemoryDatasetStore,
)
from routewise.evaluation.registry import (
    EvaluationRegistry,
    EvaluationResult,
    FailureType,
    InMemoryResultStore,
    JsonLinesResultStore,
    score_sample,
)

__all__ = [
    "EvaluationDataset",
    "EvaluationSample",
    "FileDatasetStore",
    "InMemoryDatasetStore",
    "EvaluationRegistry",
    "EvaluationResult",
    "FailureType",
    "InMemoryResultStore",
    "JsonLinesResultStore",
    "score_sample",
]
