"""
Policy matching.

Turns a request context and the active policy table into a PolicyDecision.
Global defaults seed the decision; matching rules then claim action fields
in an order set by the merge strategy. The first rule to set a field owns
it, so a field is never overwritten by a later rule.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from routewise.core.models import CacheDirective, RequestContext
from routewise.policy.models import PolicyDecision, PolicyRule, PolicyTable, RuleClass
from routewise.policy.store import PolicySnapshot, PolicyStore
from routewise.utils.clock import Clock, SystemClock

logger = structlog.get_logger()


class MergeStrategy(str, Enum):
    """How action fields from several matching rules are combined."""

    HIGHEST_PRIORITY_WINS = "highest_priority_wins"
    OVERRIDE_CLASSES = "override_classes"


def _claim_order(rules: list[PolicyRule], strategy: MergeStrategy) -> list[PolicyRule]:
    if strategy == MergeStrategy.OVERRIDE_CLASSES:
        return sorted(
            rules,
            key=lambda r: (0 if r.rule_class == RuleClass.OVERRIDE else 1, *r.sort_key),
        )
    return rules


def evaluate(
    table: PolicyTable,
    context: RequestContext,
    now: datetime,
    strategy: MergeStrategy = MergeStrategy.HIGHEST_PRIORITY_WINS,
    ordered_rules: list[PolicyRule] | tuple[PolicyRule, ...] | None = None,
    revision: int = 0,
) -> PolicyDecision:
    """
    Match ``context`` against ``table`` at ``now``.

    Pure function of its inputs: the same table, context and time always
    produce the same decision.
    """
    rules = ordered_rules if ordered_rules is not None else table.ordered_rules()
    matched = [r for r in rules if r.is_active(now) and r.matches(context, now)]

    claimed: dict[str, Any] = {}
    sources: dict[str, str] = {}
    for rule in _claim_order(matched, strategy):
        for name, value in rule.actions.present_fields().items():
            if name not in claimed:
                claimed[name] = value
                sources[name] = rule.id

    settings = table.global_settings
    cache_enabled = claimed.get("cache_enabled", settings.cache_enabled)
    cache_ttl = claimed.get("cache_ttl_seconds", settings.cache_ttl_seconds)

    return PolicyDecision(
        preferred_providers=claimed.get("preferred_providers", []),
        fallback_providers=claimed.get("fallback_providers", settings.default_fallbacks),
        allowed_models=claimed.get("allowed_models"),
        blocked_models=claimed.get("blocked_models"),
        routing_strategy=claimed.get("routing_strategy", settings.default_routing_strategy),
        cache=CacheDirective(enabled=cache_enabled, ttl_seconds=cache_ttl if cache_enabled else 0),
        rate_limit_override=claimed.get("rate_limit_override"),
        applied_rules=[r.id for r in matched],
        field_sources=sources,
        max_retries=settings.max_retries,
        timeout_ms=settings.timeout_ms,
        policy_version=table.version,
        revision=revision,
    )


class PolicyMatcher:
    """
    Answers routing policy questions against the store's active snapshot.

    Each call reads the snapshot reference once, so a concurrent table swap
    is observed either fully or not at all.
    """

    def __init__(
        self,
        store: PolicyStore,
        strategy: MergeStrategy | str = MergeStrategy.HIGHEST_PRIORITY_WINS,
        clock: Clock | None = None,
    ):
        self._store = store
        self._strategy = MergeStrategy(strategy)
        self._clock = clock or SystemClock()

    @property
    def strategy(self) -> MergeStrategy:
        return self._strategy

    def decide(self, context: RequestContext, now: datetime | None = None) -> PolicyDecision:
        snapshot: PolicySnapshot = self._store.snapshot
        moment = now or context.current_time or self._clock.now()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        decision = evaluate(
            snapshot.table,
            context,
            moment,
            strategy=self._strategy,
            ordered_rules=snapshot.ordered_rules,
            revision=snapshot.revision,
        )
        logger.debug(
            "Policy decision",
            request_type=context.request_type,
            applied_rules=decision.applied_rules,
            strategy=decision.routing_strategy.value,
            revision=snapshot.revision,
        )
        return decision
