"""Per-user daily quotas."""

from routewise.quota.ledger import Admission, LimitResolution, QuotaLedger, check_admission
from routewise.quota.store import (
    DailyUsageRecord,
    InMemoryQuotaStore,
    QuotaStore,
    RedisQuotaStore,
    UsageCounters,
)
from routewise.quota.tiers import DailyLimits, TierDefinition, TierTable

__all__ = [
    "Admission",
    "LimitResolution",
    "QuotaLedger",
    "check_admission",
    "DailyUsageRecord",
    "InMemoryQuotaStore",
    "QuotaStore",
    "RedisQuotaStore",
    "UsageCounters",
    "DailyLimits",
    "TierDefinition",
    "TierTable",
]
