"""
Quota storage.

Daily usage records are keyed by (quota day, user id). Every change goes
through ``transact``, an atomic read-modify-write on one key, so admission
checks and increments can never lose updates under concurrency.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Protocol, TypeVar

import structlog
from redis.exceptions import WatchError

from routewise.core.errors import QuotaStoreError
from routewise.quota.tiers import DailyLimits

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class UsageCounters:
    """Running counters for one user-day. Never decrease."""

    level1_requests: int = 0
    level2_requests: int = 0
    tokens: int = 0
    cost: float = 0.0

    def requests_for(self, level: str) -> int:
        return self.level1_requests if level == "level1" else self.level2_requests

    def add(self, level: str, tokens: int, cost: float) -> "UsageCounters":
        if tokens < 0 or cost < 0:
            raise ValueError("Usage increments must be non-negative")
        return UsageCounters(
            level1_requests=self.level1_requests + (1 if level == "level1" else 0),
            level2_requests=self.level2_requests + (1 if level != "level1" else 0),
            tokens=self.tokens + tokens,
            cost=self.cost + cost,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "level1_requests": self.level1_requests,
            "level2_requests": self.level2_requests,
            "tokens": self.tokens,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageCounters":
        return cls(
            level1_requests=int(data.get("level1_requests", 0)),
            level2_requests=int(data.get("level2_requests", 0)),
            tokens=int(data.get("tokens", 0)),
            cost=float(data.get("cost", 0.0)),
        )


def _block_state(usage: UsageCounters, limits: DailyLimits) -> tuple[bool, str | None]:
    if (
        usage.level1_requests >= limits.level1_requests
        and usage.level2_requests >= limits.level2_requests
    ):
        return True, "Daily request limits exceeded"
    if usage.cost >= limits.daily_max_cost:
        return True, "Daily cost limit exceeded"
    return False, None


@dataclass(frozen=True)
class DailyUsageRecord:
    """Per-user, per-day consumption. Replaced on every change, never mutated."""

    user_id: str
    date: str  # quota day, YYYY-MM-DD
    tier: str
    usage: UsageCounters
    limits: DailyLimits
    reset_at: datetime
    created_at: datetime
    is_blocked: bool = False
    block_reason: str | None = None

    def with_usage(self, usage: UsageCounters) -> "DailyUsageRecord":
        blocked, reason = _block_state(usage, self.limits)
        if not blocked:
            blocked, reason = self.is_blocked, self.block_reason
        return replace(self, usage=usage, is_blocked=blocked, block_reason=reason)

    def with_limits(self, tier: str, limits: DailyLimits) -> "DailyUsageRecord":
        """Swap in new limits; the blocked flag is re-evaluated against them."""
        blocked, reason = _block_state(self.usage, limits)
        return replace(self, tier=tier, limits=limits, is_blocked=blocked, block_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "date": self.date,
            "tier": self.tier,
            "usage": self.usage.to_dict(),
            "limits": self.limits.to_dict(),
            "reset_at": self.reset_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "is_blocked": self.is_blocked,
            "block_reason": self.block_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyUsageRecord":
        """Create from dictionary."""
        return cls(
            user_id=data["user_id"],
            date=data["date"],
            tier=data["tier"],
            usage=UsageCounters.from_dict(data.get("usage", {})),
            limits=DailyLimits.from_dict(data["limits"]),
            reset_at=datetime.fromisoformat(data["reset_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            is_blocked=data.get("is_blocked", False),
            block_reason=data.get("block_reason"),
        )


Transaction = Callable[[DailyUsageRecord | None], tuple[DailyUsageRecord | None, T]]


class QuotaStore(Protocol):
    """
    Persistence for daily usage records.

    ``transact`` runs ``fn`` against the current record for one key and
    stores the record it returns, atomically. Returning the same record or
    None leaves the store untouched.
    """

    async def get(self, user_id: str, day: str) -> DailyUsageRecord | None:
        ...

    async def transact(self, user_id: str, day: str, fn: Transaction[T]) -> T:
        ...

    async def purge_before(self, day: str) -> int:
        ...

    async def records_for(self, day: str) -> list[DailyUsageRecord]:
        ...


class InMemoryQuotaStore:
    """Process-local store with one lock per user-day key."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], DailyUsageRecord] = {}
        self._locks: dict[tuple[str, str], Lock] = {}
        self._guard = Lock()

    def _lock_for(self, key: tuple[str, str]) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = Lock()
            return lock

    async def get(self, user_id: str, day: str) -> DailyUsageRecord | None:
        return self._records.get((day, user_id))

    async def transact(self, user_id: str, day: str, fn: Transaction[T]) -> T:
        key = (day, user_id)
        with self._lock_for(key):
            current = self._records.get(key)
            updated, result = fn(current)
            if updated is not None and updated is not current:
                self._records[key] = updated
            return result

    async def purge_before(self, day: str) -> int:
        with self._guard:
            stale = [key for key in self._records if key[0] < day]
            for key in stale:
                del self._records[key]
                self._locks.pop(key, None)
            return len(stale)

    async def records_for(self, day: str) -> list[DailyUsageRecord]:
        with self._guard:
            return [record for (d, _), record in self._records.items() if d == day]

    def __len__(self) -> int:
        return len(self._records)


class RedisQuotaStore:
    """
    Redis-backed store shared across processes.

    Each user-day is one JSON string. ``transact`` is a WATCH/MULTI
    compare-and-swap loop retried on contention. Keys expire after two
    days so stale records disappear even without the purge job.
    """

    KEY_PREFIX = "routewise:quota:"

    def __init__(
        self,
        redis_client: Any,
        ttl_seconds: int = 2 * 24 * 3600,
        max_retries: int = 50,
        key_prefix: str | None = None,
    ):
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._max_retries = max_retries
        self._prefix = key_prefix or self.KEY_PREFIX

    def _key(self, user_id: str, day: str) -> str:
        return f"{self._prefix}{day}:{user_id}"

    @staticmethod
    def _decode(raw: Any) -> DailyUsageRecord | None:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return DailyUsageRecord.from_dict(json.loads(raw))

    async def get(self, user_id: str, day: str) -> DailyUsageRecord | None:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, self._redis.get, self._key(user_id, day))
        return self._decode(raw)

    async def transact(self, user_id: str, day: str, fn: Transaction[T]) -> T:
        key = self._key(user_id, day)

        def _compare_and_swap() -> T:
            for attempt in range(self._max_retries):
                with self._redis.pipeline() as pipe:
                    try:
                        pipe.watch(key)
                        current = self._decode(pipe.get(key))
                        updated, result = fn(current)
                        pipe.multi()
                        if updated is not None and updated is not current:
                            pipe.set(key, json.dumps(updated.to_dict()), ex=self._ttl_seconds)
                        pipe.execute()
                        return result
                    except WatchError:
                        logger.debug("Quota key contended, retrying", key=key, attempt=attempt + 1)
                        continue
            raise QuotaStoreError(
                f"Could not update {key} after {self._max_retries} attempts"
            )

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _compare_and_swap)

    async def purge_before(self, day: str) -> int:
        def _purge() -> int:
            removed = 0
            for key in self._redis.scan_iter(match=f"{self._prefix}*"):
                name = key.decode("utf-8") if isinstance(key, bytes) else key
                key_day = name[len(self._prefix):].split(":", 1)[0]
                if key_day < day:
                    removed += self._redis.delete(key)
            return removed

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _purge)

    async def records_for(self, day: str) -> list[DailyUsageRecord]:
        def _collect() -> list[DailyUsageRecord]:
            keys = list(self._redis.scan_iter(match=f"{self._prefix}{day}:*"))
            if not keys:
                return []
            return [r for r in (self._decode(raw) for raw in self._redis.mget(keys)) if r]

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _collect)
