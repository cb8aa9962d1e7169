"""
User tier definitions and tier lookup.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import structlog

from routewise.core.config import TierLimits

logger = structlog.get_logger()

TierLookup = Callable[[str], "str | None | Awaitable[str | None]"]


@dataclass(frozen=True)
class DailyLimits:
    """Limits fixed into a daily usage record."""

    level1_requests: int
    level2_requests: int
    total_tokens: int
    daily_max_cost: float

    def requests_for(self, level: str) -> int:
        return self.level1_requests if level == "level1" else self.level2_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "level1_requests": self.level1_requests,
            "level2_requests": self.level2_requests,
            "total_tokens": self.total_tokens,
            "daily_max_cost": self.daily_max_cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyLimits":
        return cls(
            level1_requests=int(data["level1_requests"]),
            level2_requests=int(data["level2_requests"]),
            total_tokens=int(data["total_tokens"]),
            daily_max_cost=float(data["daily_max_cost"]),
        )


@dataclass(frozen=True)
class TierDefinition:
    """A named bundle of daily limits and cost ceilings."""

    name: str
    level1_requests: int
    level2_requests: int
    total_tokens: int
    daily_max_cost: float
    monthly_max_cost: float
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def daily_limits(self) -> DailyLimits:
        return DailyLimits(
            level1_requests=self.level1_requests,
            level2_requests=self.level2_requests,
            total_tokens=self.total_tokens,
            daily_max_cost=self.daily_max_cost,
        )

    @classmethod
    def from_limits(cls, name: str, limits: TierLimits) -> "TierDefinition":
        return cls(
            name=name,
            level1_requests=limits.level1_requests,
            level2_requests=limits.level2_requests,
            total_tokens=limits.total_tokens,
            daily_max_cost=limits.daily_max_cost,
            monthly_max_cost=limits.monthly_max_cost,
            features=tuple(limits.features),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "level1_requests": self.level1_requests,
            "level2_requests": self.level2_requests,
            "total_tokens": self.total_tokens,
            "daily_max_cost": self.daily_max_cost,
            "monthly_max_cost": self.monthly_max_cost,
            "features": list(self.features),
        }


class TierTable:
    """Tier name to definition, with a default tier for unknown names."""

    def __init__(self, tiers: Mapping[str, TierDefinition], default_tier: str = "free"):
        if default_tier not in tiers:
            raise ValueError(f"Default tier {default_tier!r} is not defined")
        self._tiers = dict(tiers)
        self.default_tier = default_tier

    @classmethod
    def from_settings(cls, tiers: Mapping[str, TierLimits], default_tier: str = "free") -> "TierTable":
        return cls(
            {name: TierDefinition.from_limits(name, limits) for name, limits in tiers.items()},
            default_tier=default_tier,
        )

    def __contains__(self, name: object) -> bool:
        return name in self._tiers

    def __iter__(self):
        return iter(self._tiers.values())

    def get(self, name: str | None) -> TierDefinition:
        """Return the named tier, or the default tier when unknown."""
        if name is not None and name in self._tiers:
            return self._tiers[name]
        return self._tiers[self.default_tier]

    async def resolve(
        self,
        user_id: str,
        lookup: TierLookup | None = None,
    ) -> TierDefinition:
        """
        Resolve a user's tier from the user id.

        Lookup failures, empty answers and unknown tier names fall back to
        the default tier.
        """
        if lookup is None:
            return self._tiers[self.default_tier]

        try:
            name = lookup(user_id)
            if inspect.isawaitable(name):
                name = await name
        except Exception as e:
            logger.warning(
                "Tier lookup failed, using default tier",
                user_id=user_id,
                default_tier=self.default_tier,
                error=str(e),
            )
            return self._tiers[self.default_tier]

        if name is None or name not in self._tiers:
            if name is not None:
                logger.warning("Unknown tier, using default tier", user_id=user_id, tier=name)
            return self._tiers[self.default_tier]
        return self._tiers[name]
