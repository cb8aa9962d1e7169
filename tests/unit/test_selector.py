"""Tests for the accuracy-cost selector and provider catalog."""

import random

import pytest

from routewise.core.errors import NoEligibleProviderError
from routewise.core.models import NO_RETENTION, ProviderCandidate, TaskLevel
from routewise.optimization.selector import AccuracyCostSelector
from routewise.routing.catalog import ProviderCatalog


def candidate(name: str, accuracy: float, cost: float, latency: float = 1000, private: bool = False):
    features = frozenset({NO_RETENTION}) if private else frozenset()
    return ProviderCandidate(name, "m", accuracy, cost, latency_ms=latency, features=features)


class TestLevel2Selection:
    """Cheapest candidate within the accuracy threshold."""

    def test_free_candidate_within_threshold_selected(self, selector):
        candidates = [
            candidate("A", 100, 0.00003),
            candidate("B", 98, 0.000015),
            candidate("C", 96, 0.0),
        ]
        ranked = selector.rank(candidates, TaskLevel.LEVEL2, threshold=5)
        assert {c.provider for c in ranked} == {"A", "B", "C"}
        assert selector.select(candidates, TaskLevel.LEVEL2, threshold=5).provider == "C"

    def test_candidates_below_threshold_excluded(self, selector):
        candidates = [candidate("A", 100, 0.00003), candidate("cheap", 90, 0.0)]
        assert selector.select(candidates, TaskLevel.LEVEL2, threshold=5).provider == "A"

    def test_cheapest_paid_candidate(self, selector):
        candidates = [candidate("A", 99, 0.00003), candidate("B", 97, 0.00001)]
        assert selector.select(candidates, TaskLevel.LEVEL2).provider == "B"

    def test_free_beats_any_paid(self, selector):
        candidates = [candidate("tiny", 95, 1e-12), candidate("free", 95, 0.0, latency=5000)]
        assert selector.select(candidates, TaskLevel.LEVEL2).provider == "free"

    def test_ties_broken_by_latency_then_identifier(self, selector):
        candidates = [
            candidate("b", 95, 0.00001, latency=500),
            candidate("a", 95, 0.00001, latency=500),
            candidate("c", 95, 0.00001, latency=100),
        ]
        ranked = selector.rank(candidates, TaskLevel.LEVEL2)
        assert [c.provider for c in ranked] == ["c", "a", "b"]

    def test_threshold_property(self, selector):
        rng = random.Random(42)
        for _ in range(200):
            pool = [
                candidate(f"p{i}", rng.uniform(50, 100), rng.choice([0.0, rng.uniform(0, 0.0001)]))
                for i in range(rng.randint(1, 8))
            ]
            threshold = rng.uniform(0, 20)
            chosen = selector.select(pool, TaskLevel.LEVEL2, threshold=threshold)
            best = max(c.accuracy for c in pool)
            assert chosen.accuracy >= best - threshold
            qualifying = [c for c in pool if c.accuracy >= best - threshold]
            if any(c.cost_per_unit == 0 for c in qualifying):
                assert chosen.cost_per_unit == 0

    def test_zero_threshold_keeps_only_best(self, selector):
        candidates = [candidate("A", 100, 0.1), candidate("B", 99.9, 0.0)]
        assert selector.select(candidates, TaskLevel.LEVEL2, threshold=0).provider == "A"

    def test_negative_threshold(self, selector):
        with pytest.raises(ValueError):
            selector.select([candidate("A", 90, 0.0)], TaskLevel.LEVEL2, threshold=-1)
        with pytest.raises(ValueError):
            AccuracyCostSelector(threshold_percent=-1)


class TestLevel1Selection:
    """Most accurate candidate wins."""

    def test_highest_accuracy(self, selector):
        candidates = [candidate("A", 95, 0.0), candidate("B", 97, 0.0001)]
        assert selector.select(candidates, TaskLevel.LEVEL1).provider == "B"

    def test_ties_by_latency_then_cost(self, selector):
        candidates = [
            candidate("slow", 97, 0.0, latency=2000),
            candidate("fast-pricey", 97, 0.0002, latency=500),
            candidate("fast-cheap", 97, 0.0001, latency=500),
        ]
        ranked = selector.rank(candidates, TaskLevel.LEVEL1)
        assert [c.provider for c in ranked] == ["fast-cheap", "fast-pricey", "slow"]

    def test_no_retention_requirement(self, selector):
        candidates = [candidate("A", 99, 0.0), candidate("B", 92, 0.0, private=True)]
        chosen = selector.select(candidates, TaskLevel.LEVEL1, require_no_retention=True)
        assert chosen.provider == "B"


class TestEmptyPools:
    def test_empty_input(self, selector):
        with pytest.raises(NoEligibleProviderError):
            selector.select([], TaskLevel.LEVEL2)

    def test_no_private_candidates(self, selector):
        with pytest.raises(NoEligibleProviderError) as exc_info:
            selector.select([candidate("A", 99, 0.0)], TaskLevel.LEVEL1, require_no_retention=True)
        assert exc_info.value.task_level == "level1"


class TestAccuracyOverrides:
    """Measured accuracy replaces catalog accuracy."""

    def test_override_changes_choice(self, selector):
        candidates = [candidate("A", 95, 0.0), candidate("B", 97, 0.0)]
        selector.update_accuracy("A/m", 99)
        assert selector.select(candidates, TaskLevel.LEVEL1).provider == "A"

    def test_override_bounds(self, selector):
        with pytest.raises(ValueError):
            selector.update_accuracy("A/m", 120)


class TestProviderCatalog:
    """Tests for candidate pools."""

    def test_models_for_keeps_provider_order(self):
        catalog = ProviderCatalog()
        models = catalog.models_for(["vertex", "openai", "vertex"])
        assert [c.identifier for c in models] == [
            "vertex/gemini-1.5-pro",
            "openai/gpt-4-turbo",
            "openai/gpt-4o",
        ]

    def test_unknown_provider(self):
        assert ProviderCatalog().models_for(["nobody"]) == []

    def test_level1_floor(self):
        catalog = ProviderCatalog()
        pool = catalog.filter(catalog.models_for(["openrouter", "openai"]), TaskLevel.LEVEL1)
        assert all(c.accuracy >= 90 for c in pool)
        assert {c.provider for c in pool} == {"openai"}

    def test_allowed_and_blocked_models(self):
        catalog = ProviderCatalog()
        pool = catalog.filter(
            catalog.models_for(["openai", "anthropic"]),
            TaskLevel.LEVEL2,
            allowed_models=["gpt-4o", "claude-3-opus"],
            blocked_models=["claude-3-opus"],
        )
        assert [c.model for c in pool] == ["gpt-4o"]

    def test_required_accuracy(self):
        catalog = ProviderCatalog()
        pool = catalog.filter(catalog.all(), TaskLevel.LEVEL2, required_accuracy=95)
        assert {c.identifier for c in pool} == {"openai/gpt-4-turbo", "anthropic/claude-3-opus"}

    def test_region(self):
        catalog = ProviderCatalog([
            ProviderCandidate("eu", "m", 90, 0.0, regions=frozenset({"eu"})),
            ProviderCandidate("global", "m", 90, 0.0),
        ])
        pool = catalog.filter(catalog.all(), TaskLevel.LEVEL2, region="us")
        assert [c.provider for c in pool] == ["global"]

    def test_from_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(
            '[{"provider": "local", "model": "tiny", "accuracy": 70, "cost_per_unit": 0,'
            ' "features": ["no_retention"]}]'
        )
        catalog = ProviderCatalog.from_file(path, level1_min_accuracy=60)
        assert catalog.providers == ["local"]
        assert catalog.all()[0].no_retention
        assert catalog.level1_min_accuracy == 60
