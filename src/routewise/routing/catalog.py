"""
Provider catalog.

The models each provider offers, with baseline accuracy, per-token cost and
latency. Measured accuracy from the evaluation registry replaces the
baseline at selection time.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

from routewise.core.models import NO_RETENTION, ProviderCandidate, TaskLevel

DEFAULT_LEVEL1_MIN_ACCURACY = 90.0

DEFAULT_CATALOG: tuple[ProviderCandidate, ...] = (
    # OpenAI
    ProviderCandidate("openai", "gpt-4-turbo", accuracy=95, cost_per_unit=0.00003, latency_ms=1200),
    ProviderCandidate("openai", "gpt-4o", accuracy=93, cost_per_unit=0.000015, latency_ms=800),
    # Anthropic
    ProviderCandidate(
        "anthropic", "claude-3-opus", accuracy=96, cost_per_unit=0.000075, latency_ms=1500,
        features=frozenset({NO_RETENTION}),
    ),
    ProviderCandidate(
        "anthropic", "claude-3-sonnet", accuracy=92, cost_per_unit=0.000015, latency_ms=900,
        features=frozenset({NO_RETENTION}),
    ),
    # Vertex AI
    ProviderCandidate(
        "vertex", "gemini-1.5-pro", accuracy=91, cost_per_unit=0.0000035, latency_ms=1000,
        features=frozenset({NO_RETENTION}),
    ),
    # OpenRouter
    ProviderCandidate("openrouter", "llama-3.1-70b", accuracy=85, cost_per_unit=0.000004, latency_ms=700),
    ProviderCandidate("openrouter", "mixtral-8x7b", accuracy=87, cost_per_unit=0.000006, latency_ms=600),
    # Together
    ProviderCandidate("together", "llama-3.1-8b", accuracy=78, cost_per_unit=0.0000002, latency_ms=400),
    # Local
    ProviderCandidate(
        "ollama", "llama-3.1-8b", accuracy=75, cost_per_unit=0.0, latency_ms=1500,
        features=frozenset({NO_RETENTION}),
    ),
)


class ProviderCatalog:
    """Lookup of candidate models by provider."""

    def __init__(
        self,
        candidates: Iterable[ProviderCandidate] = DEFAULT_CATALOG,
        level1_min_accuracy: float = DEFAULT_LEVEL1_MIN_ACCURACY,
    ):
        self._by_provider: dict[str, list[ProviderCandidate]] = {}
        for candidate in candidates:
            self._by_provider.setdefault(candidate.provider, []).append(candidate)
        self.level1_min_accuracy = level1_min_accuracy

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> "ProviderCatalog":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls([ProviderCandidate.from_dict(item) for item in data], **kwargs)

    @property
    def providers(self) -> list[str]:
        return list(self._by_provider)

    def all(self) -> list[ProviderCandidate]:
        return [c for models in self._by_provider.values() for c in models]

    def models_for(self, providers: Iterable[str]) -> list[ProviderCandidate]:
        """Models of the given providers, in provider order, without duplicates."""
        seen: set[str] = set()
        result = []
        for provider in providers:
            if provider in seen:
                continue
            seen.add(provider)
            result.extend(self._by_provider.get(provider, []))
        return result

    def filter(
        self,
        candidates: Iterable[ProviderCandidate],
        task_level: TaskLevel,
        allowed_models: list[str] | None = None,
        blocked_models: list[str] | None = None,
        region: str | None = None,
        required_accuracy: float | None = None,
    ) -> list[ProviderCandidate]:
        """Apply model restrictions, region and accuracy floors."""
        floor = required_accuracy or 0.0
        if task_level == TaskLevel.LEVEL1:
            floor = max(floor, self.level1_min_accuracy)

        result = []
        for c in candidates:
            if allowed_models and c.model not in allowed_models:
                continue
            if blocked_models and c.model in blocked_models:
                continue
            if not c.serves_region(region):
                continue
            if c.accuracy < floor:
                continue
            result.append(c)
        return result
