"""
Policy table models.

A policy table is a versioned, priority-ordered list of rules plus global
defaults. Rules match request contexts through their conditions and set
routing fields through their actions.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from routewise.core.errors import InvalidPolicyTableError
from routewise.core.models import (
    CacheDirective,
    PrivacyLevel,
    RateLimitOverride,
    RequestContext,
    RoutingStrategy,
)

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RuleClass(str, Enum):
    """Merge class used by the override-class strategy."""

    OVERRIDE = "override"
    DEFAULT = "default"


class AccuracyBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float | None = Field(default=None, ge=0, le=100)
    max: float | None = Field(default=None, ge=0, le=100)

    def contains(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class TimeWindow(BaseModel):
    """Time-of-day window. Wraps midnight when start is later than end."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    timezone: str = "UTC"

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"Invalid time {v!r}. Expected HH:MM")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {v!r}") from e
        return v

    def contains(self, moment: datetime) -> bool:
        local = _as_utc(moment).astimezone(ZoneInfo(self.timezone))
        current = local.time().replace(second=0, microsecond=0)
        start = time.fromisoformat(self.start)
        end = time.fromisoformat(self.end)
        if start <= end:
            return start <= current <= end
        return current >= start or current <= end


class RuleConditions(BaseModel):
    """
    Conditions a request must satisfy for a rule to match.

    An unset condition matches everything. Region, privacy, accuracy and
    cost conditions also match when the request does not carry the value.
    Empty lists are treated as unset.
    """

    model_config = ConfigDict(frozen=True)

    request_types: list[str] | None = None
    user_tiers: list[str] | None = None
    regions: list[str] | None = None
    emergency: bool | None = None
    accuracy: AccuracyBounds | None = None
    privacy_levels: list[PrivacyLevel] | None = None
    contains_sensitive_data: bool | None = None
    time_window: TimeWindow | None = None
    max_cost_per_request: float | None = Field(default=None, ge=0)

    def matches(self, context: RequestContext, now: datetime) -> bool:
        if self.request_types and context.request_type not in self.request_types:
            return False

        if self.user_tiers and context.user_tier not in self.user_tiers:
            return False

        if self.regions and context.region is not None and context.region not in self.regions:
            return False

        if self.emergency is not None and self.emergency != context.emergency:
            return False

        if (
            self.accuracy is not None
            and context.required_accuracy is not None
            and not self.accuracy.contains(context.required_accuracy)
        ):
            return False

        if (
            self.privacy_levels
            and context.privacy_level is not None
            and context.privacy_level not in self.privacy_levels
        ):
            return False

        if (
            self.contains_sensitive_data is not None
            and self.contains_sensitive_data != context.contains_sensitive_data
        ):
            return False

        if self.time_window is not None and not self.time_window.contains(now):
            return False

        if (
            self.max_cost_per_request is not None
            and context.estimated_cost is not None
            and context.estimated_cost > self.max_cost_per_request
        ):
            return False

        return True


class RuleActions(BaseModel):
    """Fields a matching rule sets on the routing decision."""

    model_config = ConfigDict(frozen=True)

    preferred_providers: list[str] = Field(default_factory=list)
    fallback_providers: list[str] = Field(default_factory=list)
    allowed_models: list[str] | None = None
    blocked_models: list[str] | None = None
    routing_strategy: RoutingStrategy | None = None
    cache_enabled: bool | None = None
    cache_ttl_seconds: int | None = Field(default=None, ge=0)
    rate_limit_override: RateLimitOverride | None = None

    def present_fields(self) -> dict[str, Any]:
        """Action fields this rule actually sets. Empty lists are not set."""
        fields: dict[str, Any] = {}
        for name in ("preferred_providers", "fallback_providers", "allowed_models", "blocked_models"):
            value = getattr(self, name)
            if value:
                fields[name] = list(value)
        for name in ("routing_strategy", "cache_enabled", "cache_ttl_seconds", "rate_limit_override"):
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        return fields


class PolicyRule(BaseModel):
    """A conditional, priority-ordered routing directive."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    priority: StrictInt
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: RuleActions = Field(default_factory=RuleActions)
    rule_class: RuleClass = RuleClass.DEFAULT
    enabled: bool = True
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    last_modified: datetime | None = None
    modified_by: str | None = None

    @field_validator("valid_from", "valid_until", "last_modified")
    @classmethod
    def ensure_aware(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (-self.priority, self.id)

    def is_active(self, now: datetime) -> bool:
        """Enabled and inside its validity window."""
        if not self.enabled:
            return False
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_until is not None and now > self.valid_until:
            return False
        return True

    def matches(self, context: RequestContext, now: datetime) -> bool:
        return self.conditions.matches(context, now)


class GlobalSettings(BaseModel):
    """Defaults that seed every policy decision."""

    model_config = ConfigDict(frozen=True)

    default_routing_strategy: RoutingStrategy = RoutingStrategy.BALANCED
    fallback_provider: str = "openai"
    fallback_providers: list[str] = Field(default_factory=list)
    max_retries: int = Field(default=3, ge=0)
    timeout_ms: int = Field(default=30_000, gt=0)
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=1800, ge=0)

    @property
    def default_fallbacks(self) -> list[str]:
        return list(self.fallback_providers) or [self.fallback_provider]


class PolicyTable(BaseModel):
    """Versioned rule set plus global defaults."""

    model_config = ConfigDict(frozen=True)

    version: str
    last_updated: datetime | None = None
    rules: list[PolicyRule] = Field(default_factory=list)
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)

    @field_validator("last_updated")
    @classmethod
    def ensure_aware(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    def ordered_rules(self) -> list[PolicyRule]:
        """Rules by priority descending, ties broken by id."""
        return sorted(self.rules, key=lambda r: r.sort_key)

    def get_rule(self, rule_id: str) -> PolicyRule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def with_rule(self, rule: PolicyRule) -> "PolicyTable":
        """Return a copy with ``rule`` inserted or replacing the rule with its id."""
        rules = list(self.rules)
        for i, existing in enumerate(rules):
            if existing.id == rule.id:
                rules[i] = rule
                break
        else:
            rules.append(rule)
        return self.model_copy(update={"rules": rules})

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def validate_table(table: PolicyTable) -> list[str]:
    """Structural checks beyond field types. Returns a list of problems."""
    errors = []
    if not table.version or not table.version.strip():
        errors.append("version must not be empty")

    seen: set[str] = set()
    for index, rule in enumerate(table.rules):
        label = f"rules[{index}]"
        if not rule.id or not rule.id.strip():
            errors.append(f"{label}: id must not be empty")
        elif rule.id in seen:
            errors.append(f"{label}: duplicate rule id {rule.id!r}")
        else:
            seen.add(rule.id)
        if not rule.name or not rule.name.strip():
            errors.append(f"{label}: name must not be empty")
        if (
            rule.valid_from is not None
            and rule.valid_until is not None
            and rule.valid_until < rule.valid_from
        ):
            errors.append(f"{label}: valid_until is before valid_from")
    return errors


def parse_table(data: PolicyTable | Mapping[str, Any]) -> PolicyTable:
    """
    Build and validate a policy table.

    Raises:
        InvalidPolicyTableError: If the data is malformed.
    """
    if isinstance(data, PolicyTable):
        table = data
    else:
        try:
            table = PolicyTable.model_validate(data)
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise InvalidPolicyTableError("Invalid policy table structure", messages) from e

    errors = validate_table(table)
    if errors:
        raise InvalidPolicyTableError(f"Invalid policy table: {errors[0]}", errors)
    return table


def parse_rule(data: PolicyRule | Mapping[str, Any]) -> PolicyRule:
    """Build a single rule, raising InvalidPolicyTableError on bad data."""
    if isinstance(data, PolicyRule):
        return data
    try:
        return PolicyRule.model_validate(data)
    except ValidationError as e:
        messages = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise InvalidPolicyTableError("Invalid rule structure", messages) from e


class PolicyDecision(BaseModel):
    """Result of matching a request context against the active table."""

    model_config = ConfigDict(frozen=True)

    preferred_providers: list[str] = Field(default_factory=list)
    fallback_providers: list[str] = Field(default_factory=list)
    allowed_models: list[str] | None = None
    blocked_models: list[str] | None = None
    routing_strategy: RoutingStrategy
    cache: CacheDirective
    rate_limit_override: RateLimitOverride | None = None
    applied_rules: list[str] = Field(default_factory=list)
    field_sources: dict[str, str] = Field(default_factory=dict)
    max_retries: int = 3
    timeout_ms: int = 30_000
    policy_version: str | None = None
    revision: int = 0
