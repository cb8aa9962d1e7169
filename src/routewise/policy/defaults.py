"""Built-in policy table used when no valid table can be loaded."""

from __future__ import annotations

from routewise.core.models import RoutingStrategy
from routewise.policy.models import (
    GlobalSettings,
    PolicyRule,
    PolicyTable,
    RuleActions,
    RuleClass,
    RuleConditions,
)

DEFAULT_TABLE_VERSION = "1.0.0"


def default_policy_table() -> PolicyTable:
    return PolicyTable(
        version=DEFAULT_TABLE_VERSION,
        rules=[
            PolicyRule(
                id="emergency-high-priority",
                name="Emergency Requests - High Priority",
                description="Route emergency requests to the fastest, most reliable providers",
                priority=1000,
                rule_class=RuleClass.OVERRIDE,
                conditions=RuleConditions(emergency=True),
                actions=RuleActions(
                    preferred_providers=["openai", "anthropic"],
                    fallback_providers=["vertex"],
                    routing_strategy=RoutingStrategy.PERFORMANCE_OPTIMIZED,
                    cache_enabled=False,
                ),
                modified_by="system",
            ),
            PolicyRule(
                id="sensitive-data-high-privacy",
                name="Sensitive Data - High Privacy",
                description="Route requests carrying sensitive health data to privacy-compliant providers",
                priority=900,
                rule_class=RuleClass.OVERRIDE,
                conditions=RuleConditions(contains_sensitive_data=True),
                actions=RuleActions(
                    preferred_providers=["vertex", "anthropic"],
                    fallback_providers=["openai"],
                    routing_strategy=RoutingStrategy.PRIVACY_OPTIMIZED,
                    cache_enabled=False,
                ),
                modified_by="system",
            ),
            PolicyRule(
                id="cost-optimized-default",
                name="Cost Optimized Default",
                description="Default cost-optimized routing for standard requests",
                priority=100,
                conditions=RuleConditions(),
                actions=RuleActions(
                    preferred_providers=["openrouter", "together"],
                    fallback_providers=["openai", "anthropic"],
                    routing_strategy=RoutingStrategy.COST_OPTIMIZED,
                    cache_enabled=True,
                    cache_ttl_seconds=3600,
                ),
                modified_by="system",
            ),
        ],
        global_settings=GlobalSettings(
            default_routing_strategy=RoutingStrategy.BALANCED,
            fallback_provider="openai",
            max_retries=3,
            timeout_ms=30_000,
            cache_enabled=True,
            cache_ttl_seconds=1800,
        ),
    )
