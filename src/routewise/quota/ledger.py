"""
Daily quota ledger.

Tracks per-user, per-day consumption against tier limits. Records are
partitioned by quota day, so the first query after the daily reset instant
always sees a fresh record; the scheduled purge only removes stale days.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any

import structlog

from routewise.core.errors import QuotaExceededError
from routewise.quota.store import DailyUsageRecord, QuotaStore, UsageCounters
from routewise.quota.tiers import TierDefinition, TierLookup, TierTable
from routewise.utils.clock import Clock, SystemClock

logger = structlog.get_logger()

_COST_EPSILON = 1e-9


class LimitResolution(str, Enum):
    """When a record's limits are taken from the user's tier."""

    SNAPSHOT = "snapshot"  # fixed when the day's record is created
    PER_REQUEST = "per_request"  # re-resolved on every admission


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check."""

    allowed: bool
    reset_at: datetime
    remaining: dict[str, float] = field(default_factory=dict)
    reason: str | None = None
    limit: str | None = None  # "requests", "tokens" or "cost"
    limit_value: float | None = None
    record: DailyUsageRecord | None = field(default=None, compare=False, repr=False)

    def retry_after_seconds(self, now: datetime) -> int:
        return max(0, int((self.reset_at - now).total_seconds()))

    def to_error(self, user_id: str | None = None) -> QuotaExceededError:
        return QuotaExceededError(
            self.reason or "Daily quota exceeded",
            limit=self.limit,
            limit_value=self.limit_value,
            remaining=self.remaining,
            reset_at=self.reset_at,
            user_id=user_id,
        )

    def raise_for_rejection(self, user_id: str | None = None) -> None:
        if not self.allowed:
            raise self.to_error(user_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "limit": self.limit,
            "limit_value": self.limit_value,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


def check_admission(
    record: DailyUsageRecord,
    level: str,
    est_tokens: int,
    est_cost: float,
) -> Admission:
    """
    Check a request against a record: requests, then tokens, then cost.

    Stops at the first violated constraint.
    """
    limits, usage = record.limits, record.usage
    request_limit = limits.requests_for(level)
    current_requests = usage.requests_for(level)

    if current_requests >= request_limit:
        return Admission(
            allowed=False,
            reason=f"Daily {level} request limit exceeded ({request_limit})",
            limit="requests",
            limit_value=request_limit,
            remaining={
                "requests": 0,
                "tokens": max(0, limits.total_tokens - usage.tokens),
                "cost": max(0.0, limits.daily_max_cost - usage.cost),
            },
            reset_at=record.reset_at,
            record=record,
        )

    if usage.tokens + est_tokens > limits.total_tokens:
        return Admission(
            allowed=False,
            reason=f"Daily token limit would be exceeded ({limits.total_tokens})",
            limit="tokens",
            limit_value=limits.total_tokens,
            remaining={
                "requests": request_limit - current_requests,
                "tokens": max(0, limits.total_tokens - usage.tokens),
                "cost": max(0.0, limits.daily_max_cost - usage.cost),
            },
            reset_at=record.reset_at,
            record=record,
        )

    if usage.cost + est_cost > limits.daily_max_cost + _COST_EPSILON:
        return Admission(
            allowed=False,
            reason=f"Daily cost limit would be exceeded ({limits.daily_max_cost:.2f})",
            limit="cost",
            limit_value=limits.daily_max_cost,
            remaining={
                "requests": request_limit - current_requests,
                "tokens": max(0, limits.total_tokens - usage.tokens),
                "cost": max(0.0, limits.daily_max_cost - usage.cost),
            },
            reset_at=record.reset_at,
            record=record,
        )

    return Admission(
        allowed=True,
        remaining={
            "requests": request_limit - current_requests - 1,
            "tokens": limits.total_tokens - usage.tokens - est_tokens,
            "cost": max(0.0, limits.daily_max_cost - usage.cost - est_cost),
        },
        reset_at=record.reset_at,
        record=record,
    )


class QuotaLedger:
    """
    Admission control and usage accounting for daily tier budgets.

    Every read-check-increment runs inside a single store transaction for
    the user-day key.
    """

    def __init__(
        self,
        store: QuotaStore,
        tiers: TierTable,
        tier_lookup: TierLookup | None = None,
        clock: Clock | None = None,
        reset_time: time = time(0, 0),
        limit_resolution: LimitResolution | str = LimitResolution.SNAPSHOT,
    ):
        self._store = store
        self._tiers = tiers
        self._tier_lookup = tier_lookup
        self._clock = clock or SystemClock()
        self._reset_offset = timedelta(hours=reset_time.hour, minutes=reset_time.minute)
        self._reset_time = reset_time
        self._limit_resolution = LimitResolution(limit_resolution)

    @property
    def tiers(self) -> TierTable:
        return self._tiers

    @property
    def limit_resolution(self) -> LimitResolution:
        return self._limit_resolution

    def set_tier_lookup(self, lookup: TierLookup | None) -> None:
        self._tier_lookup = lookup

    def quota_day(self, now: datetime | None = None) -> tuple[str, datetime]:
        """Return the quota day key for ``now`` and the next reset instant."""
        now = now or self._clock.now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        shifted = now.astimezone(timezone.utc) - self._reset_offset
        day = shifted.date()
        reset_at = datetime.combine(day + timedelta(days=1), self._reset_time, tzinfo=timezone.utc)
        return day.isoformat(), reset_at

    async def resolve_tier(self, user_id: str) -> TierDefinition:
        """Resolve the user's tier through the tier lookup, or the default tier."""
        return await self._tiers.resolve(user_id, self._tier_lookup)

    def _new_record(
        self,
        user_id: str,
        day: str,
        reset_at: datetime,
        tier: TierDefinition,
    ) -> DailyUsageRecord:
        return DailyUsageRecord(
            user_id=user_id,
            date=day,
            tier=tier.name,
            usage=UsageCounters(),
            limits=tier.daily_limits,
            reset_at=reset_at,
            created_at=self._clock.now(),
        )

    def _current(
        self,
        record: DailyUsageRecord | None,
        user_id: str,
        day: str,
        reset_at: datetime,
        tier: TierDefinition,
    ) -> DailyUsageRecord:
        if record is None:
            return self._new_record(user_id, day, reset_at, tier)
        if (
            self._limit_resolution == LimitResolution.PER_REQUEST
            and (record.tier != tier.name or record.limits != tier.daily_limits)
        ):
            return record.with_limits(tier.name, tier.daily_limits)
        return record

    async def get_usage(self, user_id: str, tier: TierDefinition | None = None) -> DailyUsageRecord:
        """Return today's record for ``user_id``, creating it on first use.

        ``tier`` is a tier already returned by :meth:`resolve_tier`; when
        omitted the tier is resolved from the user id.
        """
        day, reset_at = self.quota_day()
        resolved = tier or await self.resolve_tier(user_id)

        def _txn(record: DailyUsageRecord | None) -> tuple[DailyUsageRecord, DailyUsageRecord]:
            if record is None:
                record = self._new_record(user_id, day, reset_at, resolved)
            return record, record

        return await self._store.transact(user_id, day, _txn)

    async def can_admit(
        self,
        user_id: str,
        level: str,
        est_tokens: int = 0,
        est_cost: float = 0.0,
        tier: TierDefinition | None = None,
    ) -> Admission:
        """Check whether a request may proceed, without consuming quota."""
        day, reset_at = self.quota_day()
        resolved = tier or await self.resolve_tier(user_id)

        def _txn(record: DailyUsageRecord | None) -> tuple[DailyUsageRecord, Admission]:
            current = self._current(record, user_id, day, reset_at, resolved)
            return current, check_admission(current, level, est_tokens, est_cost)

        admission = await self._store.transact(user_id, day, _txn)
        if not admission.allowed:
            logger.info(
                "Quota check rejected",
                user_id=user_id,
                level=level,
                reason=admission.reason,
            )
        return admission

    async def record_usage(
        self,
        user_id: str,
        level: str,
        tokens: int,
        cost: float,
        tier: TierDefinition | None = None,
    ) -> DailyUsageRecord:
        """Increment today's counters and re-evaluate the blocked flag."""
        day, reset_at = self.quota_day()
        resolved = tier or await self.resolve_tier(user_id)

        def _txn(record: DailyUsageRecord | None) -> tuple[DailyUsageRecord, DailyUsageRecord]:
            current = self._current(record, user_id, day, reset_at, resolved)
            updated = current.with_usage(current.usage.add(level, tokens, cost))
            return updated, updated

        updated = await self._store.transact(user_id, day, _txn)
        if updated.is_blocked:
            logger.info("User blocked for the day", user_id=user_id, reason=updated.block_reason)
        return updated

    async def admit_and_record(
        self,
        user_id: str,
        level: str,
        tokens: int,
        cost: float,
        tier: TierDefinition | None = None,
    ) -> Admission:
        """
        Atomically check a request and, if admitted, record its usage.

        A rejection records nothing.
        """
        day, reset_at = self.quota_day()
        resolved = tier or await self.resolve_tier(user_id)

        def _txn(record: DailyUsageRecord | None) -> tuple[DailyUsageRecord, Admission]:
            current = self._current(record, user_id, day, reset_at, resolved)
            admission = check_admission(current, level, tokens, cost)
            if not admission.allowed:
                return current, admission
            updated = current.with_usage(current.usage.add(level, tokens, cost))
            return updated, Admission(
                allowed=True,
                remaining=admission.remaining,
                reset_at=admission.reset_at,
                record=updated,
            )

        admission = await self._store.transact(user_id, day, _txn)
        if not admission.allowed:
            logger.info(
                "Quota admission rejected",
                user_id=user_id,
                level=level,
                reason=admission.reason,
            )
        return admission

    async def reset_daily_limits(self) -> int:
        """Purge records from previous quota days. Returns the count removed."""
        day, _ = self.quota_day()
        removed = await self._store.purge_before(day)
        logger.info("Daily quota records purged", day=day, removed=removed)
        return removed

    async def get_usage_stats(self) -> dict[str, Any]:
        """Aggregate statistics over today's records."""
        day, reset_at = self.quota_day()
        records = await self._store.records_for(day)
        users_by_tier: dict[str, int] = {tier.name: 0 for tier in self._tiers}
        level1 = level2 = tokens = 0
        total_cost = 0.0
        blocked = 0
        for record in records:
            users_by_tier[record.tier] = users_by_tier.get(record.tier, 0) + 1
            level1 += record.usage.level1_requests
            level2 += record.usage.level2_requests
            tokens += record.usage.tokens
            total_cost += record.usage.cost
            if record.is_blocked:
                blocked += 1
        return {
            "date": day,
            "reset_at": reset_at.isoformat(),
            "total_users": len(records),
            "users_by_tier": users_by_tier,
            "total_requests": {"level1": level1, "level2": level2},
            "total_tokens": tokens,
            "total_cost": total_cost,
            "blocked_users": blocked,
        }
