"""
Routewise - Policy-driven model routing

Picks a provider and model for each request from a priority-ordered policy
table, enforces daily tier quotas, and balances accuracy against cost using
measured benchmark results.
"""

__version__ = "1.0.0"
__author__ = "Routewise Team"

from routewise.core.models import (
    ProviderCandidate,
    RequestContext,
    RoutingDecision,
    TaskLevel,
)
from routewise.core.errors import (
    NoEligibleProviderError,
    QuotaExceededError,
    RoutewiseError,
)
from routewise.service import RoutingService

__all__ = [
    "RoutingService",
    "ProviderCandidate",
    "RequestContext",
    "RoutingDecision",
    "TaskLevel",
    "RoutewiseError",
    "QuotaExceededError",
    "NoEligibleProviderError",
]
