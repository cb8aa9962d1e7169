"""
Exception taxonomy for Routewise.

Quota and provider-selection failures are returned to callers as typed
exceptions; reload and per-sample evaluation failures are recovered locally.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class RoutewiseError(Exception):
    """Base exception for all routing core errors."""


class InvalidPolicyTableError(RoutewiseError):
    """Raised when a policy table fails validation. The active table is kept."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class QuotaExceededError(RoutewiseError):
    """Raised when a request would exceed the user's daily budget."""

    def __init__(
        self,
        reason: str,
        limit: str | None = None,
        limit_value: float | None = None,
        remaining: dict[str, float] | None = None,
        reset_at: datetime | None = None,
        user_id: str | None = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.limit = limit
        self.limit_value = limit_value
        self.remaining = remaining or {}
        self.reset_at = reset_at
        self.user_id = user_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": "quota_exceeded",
            "reason": self.reason,
            "limit": self.limit,
            "limit_value": self.limit_value,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


class NoEligibleProviderError(RoutewiseError):
    """Raised when no provider candidate survives filtering."""

    def __init__(self, message: str, task_level: str | None = None, candidate_count: int = 0):
        super().__init__(message)
        self.task_level = task_level
        self.candidate_count = candidate_count


class StaleReloadError(RoutewiseError):
    """Raised when policy reconciliation against the backing store fails."""

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message)
        self.source = source


class EvaluationExecutionError(RoutewiseError):
    """A single evaluation sample failed to execute."""

    def __init__(self, message: str, sample_id: str):
        super().__init__(message)
        self.sample_id = sample_id


class DatasetLoadError(RoutewiseError):
    """An evaluation dataset could not be read from its store."""

    def __init__(self, message: str, dataset_id: str):
        super().__init__(message)
        self.dataset_id = dataset_id


class QuotaStoreError(RoutewiseError):
    """The quota store could not complete an atomic update."""
