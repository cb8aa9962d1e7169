"""
Core data models for Routewise.

Defines the request descriptor, provider candidates and the routing decision
returned to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RequestType(str, Enum):
    """Kinds of AI-backed requests the router handles."""

    HEALTH_REPORT_ANALYSIS = "health_report_analysis"
    HEALTH_CONSULTATION = "health_consultation"
    NUTRITION_ADVICE = "nutrition_advice"
    RECIPE_GENERATION = "recipe_generation"
    MEAL_PLANNING = "meal_planning"
    FITNESS_PLANNING = "fitness_planning"
    FITNESS_ADAPTATION = "fitness_adaptation"
    GENERAL_CHAT = "general_chat"
    SYMPTOM_ANALYSIS = "symptom_analysis"
    MEDICATION_INTERACTION = "medication_interaction"
    LIFESTYLE_RECOMMENDATION = "lifestyle_recommendation"
    EMERGENCY_ASSESSMENT = "emergency_assessment"
    PROGRESS_ANALYSIS = "progress_analysis"
    GOAL_SETTING = "goal_setting"
    HABIT_COACHING = "habit_coaching"
    MOTIVATIONAL_SUPPORT = "motivational_support"


class TaskLevel(str, Enum):
    """Accuracy class of a request."""

    LEVEL1 = "level1"  # Maximum accuracy regardless of cost
    LEVEL2 = "level2"  # Bounded accuracy trade-off for cost


class PrivacyLevel(str, Enum):
    STANDARD = "standard"
    HIGH = "high"
    MAXIMUM = "maximum"


class RoutingStrategy(str, Enum):
    """Strategy tag carried by policy decisions."""

    COST_OPTIMIZED = "cost_optimized"
    PERFORMANCE_OPTIMIZED = "performance_optimized"
    PRIVACY_OPTIMIZED = "privacy_optimized"
    BALANCED = "balanced"


class RoutingReason(str, Enum):
    """Why the router chose the provider it did."""

    EMERGENCY_OVERRIDE = "emergency_override"
    ACCURACY_REQUIREMENT = "accuracy_requirement"
    COST_OPTIMIZATION = "cost_optimization"
    FALLBACK_TO_SECONDARY = "fallback_to_secondary"


NO_RETENTION = "no_retention"


class RequestContext(BaseModel):
    """Inbound request descriptor."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    request_type: str
    user_tier: str | None = None
    region: str | None = None
    emergency: bool = False
    required_accuracy: float | None = Field(default=None, ge=0, le=100)
    privacy_level: PrivacyLevel | None = None
    contains_sensitive_data: bool = False
    estimated_cost: float | None = Field(default=None, ge=0)
    estimated_tokens: int | None = Field(default=None, ge=0)
    current_time: datetime | None = None


@dataclass(frozen=True)
class ProviderCandidate:
    """A provider/model pair that can serve a request."""

    provider: str
    model: str
    accuracy: float  # 0-100
    cost_per_unit: float  # USD per token
    latency_ms: float = 1000.0
    features: frozenset[str] = field(default_factory=frozenset)
    regions: frozenset[str] | None = None

    @property
    def identifier(self) -> str:
        """Stable identifier used for deterministic tie-breaks."""
        return f"{self.provider}/{self.model}"

    @property
    def no_retention(self) -> bool:
        return NO_RETENTION in self.features

    def serves_region(self, region: str | None) -> bool:
        if region is None or self.regions is None:
            return True
        return region in self.regions

    def with_accuracy(self, accuracy: float) -> "ProviderCandidate":
        return replace(self, accuracy=accuracy)

    def estimate_cost(self, tokens: int) -> float:
        return tokens * self.cost_per_unit

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "provider": self.provider,
            "model": self.model,
            "accuracy": self.accuracy,
            "cost_per_unit": self.cost_per_unit,
            "latency_ms": self.latency_ms,
            "features": sorted(self.features),
            "regions": sorted(self.regions) if self.regions is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderCandidate":
        """Create from dictionary."""
        regions = data.get("regions")
        return cls(
            provider=data["provider"],
            model=data["model"],
            accuracy=float(data["accuracy"]),
            cost_per_unit=float(data["cost_per_unit"]),
            latency_ms=float(data.get("latency_ms", 1000.0)),
            features=frozenset(data.get("features", [])),
            regions=frozenset(regions) if regions is not None else None,
        )


class CacheDirective(BaseModel):
    """Response cache instruction attached to a decision."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    ttl_seconds: int = Field(default=0, ge=0)


class RateLimitOverride(BaseModel):
    """Per-minute rate limit override set by a policy rule."""

    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(gt=0)
    tokens_per_minute: int = Field(gt=0)


class RoutingDecision(BaseModel):
    """The sole output of the router for a single request."""

    model_config = ConfigDict(frozen=True)

    decision_id: str
    user_id: str
    request_type: str
    task_level: TaskLevel
    provider: str
    model: str
    fallback_chain: list[str] = Field(default_factory=list)
    applied_rules: list[str] = Field(default_factory=list)
    routing_strategy: RoutingStrategy
    routing_reason: RoutingReason
    cache: CacheDirective = Field(default_factory=CacheDirective)
    rate_limit_override: RateLimitOverride | None = None
    estimated_tokens: int = 0
    estimated_cost: float = 0.0
    quota_remaining: dict[str, float] = Field(default_factory=dict)
    policy_version: str | None = None
    states: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
