"""
Routing metrics for Routewise.

Counts routing outcomes, provider selections, rejection reasons and
estimated spend for the analytics endpoint.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any


@dataclass
class SelectionStats:
    """Aggregated selections for a provider/model."""

    selections: int = 0
    level1: int = 0
    level2: int = 0
    estimated_cost: float = 0.0
    fallback_selections: int = 0


@dataclass
class DecisionRecord:
    """A single routing outcome kept in bounded history."""

    timestamp: datetime
    user_id: str
    outcome: str
    provider: str | None = None
    model: str | None = None
    task_level: str | None = None
    reason: str | None = None
    estimated_cost: float = 0.0


class RoutingMetrics:
    """
    Thread-safe metrics collector for routing decisions.
    """

    def __init__(self, max_history: int = 1000):
        self._lock = Lock()
        self._max_history = max_history
        self._history: list[DecisionRecord] = []
        self._outcomes: dict[str, int] = defaultdict(int)
        self._selections: dict[str, SelectionStats] = defaultdict(SelectionStats)
        self._rejections: dict[str, int] = defaultdict(int)
        self._strategies: dict[str, int] = defaultdict(int)
        self._start_time = datetime.now(timezone.utc)

    def record_decision(
        self,
        user_id: str,
        provider: str,
        model: str,
        task_level: str,
        strategy: str,
        estimated_cost: float,
        fallback: bool = False,
    ) -> None:
        """Record a successful routing decision."""
        with self._lock:
            self._outcomes["done"] += 1
            self._strategies[strategy] += 1
            stats = self._selections[f"{provider}/{model}"]
            stats.selections += 1
            stats.estimated_cost += estimated_cost
            if task_level == "level1":
                stats.level1 += 1
            else:
                stats.level2 += 1
            if fallback:
                stats.fallback_selections += 1
            self._add(DecisionRecord(
                timestamp=datetime.now(timezone.utc),
                user_id=user_id,
                outcome="done",
                provider=provider,
                model=model,
                task_level=task_level,
                estimated_cost=estimated_cost,
            ))

    def record_rejection(self, user_id: str, limit: str | None, reason: str) -> None:
        """Record a quota rejection."""
        with self._lock:
            self._outcomes["rejected"] += 1
            self._rejections[limit or "unknown"] += 1
            self._add(DecisionRecord(
                timestamp=datetime.now(timezone.utc),
                user_id=user_id,
                outcome="rejected",
                reason=reason,
            ))

    def record_failure(self, user_id: str, error_type: str) -> None:
        """Record a routing failure (no eligible provider, policy error)."""
        with self._lock:
            self._outcomes["failed"] += 1
            self._add(DecisionRecord(
                timestamp=datetime.now(timezone.utc),
                user_id=user_id,
                outcome="failed",
                reason=error_type,
            ))

    def _add(self, record: DecisionRecord) -> None:
        self._history.append(record)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def get_summary(self) -> dict[str, Any]:
        """Get metrics summary."""
        with self._lock:
            total = sum(self._outcomes.values())
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
            return {
                "uptime_seconds": uptime,
                "total_requests": total,
                "outcomes": dict(self._outcomes),
                "rejection_rate": self._outcomes.get("rejected", 0) / total if total > 0 else 0,
                "total_estimated_cost": sum(s.estimated_cost for s in self._selections.values()),
                "strategies": dict(self._strategies),
                "rejections": dict(self._rejections),
                "providers": {
                    name: {
                        "selections": s.selections,
                        "level1": s.level1,
                        "level2": s.level2,
                        "estimated_cost": s.estimated_cost,
                        "fallback_selections": s.fallback_selections,
                    }
                    for name, s in self._selections.items()
                },
            }

    def get_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get recent decision history."""
        with self._lock:
            return [
                {
                    "timestamp": r.timestamp.isoformat(),
                    "user_id": r.user_id,
                    "outcome": r.outcome,
                    "provider": r.provider,
                    "model": r.model,
                    "task_level": r.task_level,
                    "reason": r.reason,
                    "estimated_cost": r.estimated_cost,
                }
                for r in self._history[-limit:]
            ]

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._history.clear()
            self._outcomes.clear()
            self._selections.clear()
            self._rejections.clear()
            self._strategies.clear()
            self._start_time = datetime.now(timezone.utc)
