"""Policy tables, matching and hot reload."""

from routewise.policy.defaults import default_policy_table
from routewise.policy.matcher import MergeStrategy, PolicyMatcher, evaluate
from routewise.policy.models import (
    GlobalSettings,
    PolicyDecision,
    PolicyRule,
    PolicyTable,
    RuleActions,
    RuleClass,
    RuleConditions,
    TimeWindow,
    parse_table,
)
from routewise.policy.store import (
    FilePolicyBackend,
    InMemoryPolicyBackend,
    PolicySnapshot,
    PolicyStore,
)

__all__ = [
    "default_policy_table",
    "MergeStrategy",
    "PolicyMatcher",
    "evaluate",
    "GlobalSettings",
    "PolicyDecision",
    "PolicyRule",
    "PolicyTable",
    "RuleActions",
    "RuleClass",
    "RuleConditions",
    "TimeWindow",
    "parse_table",
    "FilePolicyBackend",
    "InMemoryPolicyBackend",
    "PolicySnapshot",
    "PolicyStore",
]
