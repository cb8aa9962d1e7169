"""Core configuration, models and errors."""

from routewise.core.config import Settings, get_settings, reload_settings
from routewise.core.errors import (
    DatasetLoadError,
    EvaluationExecutionError,
    InvalidPolicyTableError,
    NoEligibleProviderError,
    QuotaExceededError,
    QuotaStoreError,
    RoutewiseError,
    StaleReloadError,
)
from routewise.core.models import (
    ProviderCandidate,
    RequestContext,
    RequestType,
    RoutingDecision,
    RoutingReason,
    RoutingStrategy,
    TaskLevel,
)

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "RoutewiseError",
    "InvalidPolicyTableError",
    "QuotaExceededError",
    "NoEligibleProviderError",
    "StaleReloadError",
    "EvaluationExecutionError",
    "DatasetLoadError",
    "QuotaStoreError",
    "ProviderCandidate",
    "RequestContext",
    "RequestType",
    "RoutingDecision",
    "RoutingReason",
    "RoutingStrategy",
    "TaskLevel",
]
