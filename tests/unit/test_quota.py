"""Tests for tiers, the quota store and the quota ledger."""

import asyncio
import json
import threading
from datetime import datetime, time, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from redis.exceptions import WatchError

from routewise.core.errors import QuotaExceededError, QuotaStoreError
from routewise.quota.ledger import LimitResolution, QuotaLedger, check_admission
from routewise.quota.store import DailyUsageRecord, InMemoryQuotaStore, RedisQuotaStore, UsageCounters
from routewise.quota.tiers import DailyLimits


class TestTierTable:
    """Tests for tier resolution."""

    @pytest.mark.asyncio
    async def test_no_lookup_uses_default(self, tier_table):
        assert (await tier_table.resolve("u1")).name == "free"

    @pytest.mark.asyncio
    async def test_sync_and_async_lookup(self, tier_table):
        async def lookup(user_id):
            return "enterprise"

        assert (await tier_table.resolve("u1", lookup=lambda _: "basic")).name == "basic"
        assert (await tier_table.resolve("u1", lookup=lookup)).name == "enterprise"

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back_to_default(self, tier_table):
        def lookup(user_id):
            raise ConnectionError("user service down")

        assert (await tier_table.resolve("u1", lookup=lookup)).name == "free"

    @pytest.mark.asyncio
    async def test_unknown_tier_falls_back_to_default(self, tier_table):
        assert (await tier_table.resolve("u1", lookup=lambda _: "platinum")).name == "free"
        assert (await tier_table.resolve("u1", lookup=lambda _: None)).name == "free"

    def test_default_tier_must_exist(self, tier_table):
        from routewise.quota.tiers import TierTable

        with pytest.raises(ValueError):
            TierTable({t.name: t for t in tier_table}, default_tier="missing")


class TestDailyUsageRecord:
    """Tests for record transitions."""

    @pytest.fixture
    def record(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return DailyUsageRecord(
            user_id="u1",
            date="2024-01-01",
            tier="free",
            usage=UsageCounters(),
            limits=DailyLimits(level1_requests=1, level2_requests=1, total_tokens=1000, daily_max_cost=1.0),
            reset_at=now + timedelta(days=1),
            created_at=now,
        )

    def test_blocked_when_both_levels_exhausted(self, record):
        one = record.with_usage(record.usage.add("level1", 10, 0.01))
        assert not one.is_blocked
        both = one.with_usage(one.usage.add("level2", 10, 0.01))
        assert both.is_blocked
        assert both.block_reason == "Daily request limits exceeded"

    def test_blocked_on_cost(self, record):
        spent = record.with_usage(record.usage.add("level2", 10, 1.0))
        assert spent.is_blocked
        assert spent.block_reason == "Daily cost limit exceeded"

    def test_raised_limits_clear_block(self, record):
        blocked = record.with_usage(record.usage.add("level1", 10, 0.01).add("level2", 10, 0.01))
        assert blocked.is_blocked

        raised = blocked.with_limits(
            "premium",
            DailyLimits(level1_requests=100, level2_requests=1000, total_tokens=100_000, daily_max_cost=10.0),
        )
        assert raised.tier == "premium"
        assert not raised.is_blocked
        assert raised.block_reason is None

    def test_lowered_limits_set_block(self, record):
        spent = record.with_usage(record.usage.add("level2", 10, 0.5))
        assert not spent.is_blocked
        lowered = spent.with_limits("free", DailyLimits(1, 1, 1000, 0.5))
        assert lowered.block_reason == "Daily cost limit exceeded"

    def test_negative_usage_rejected(self, record):
        with pytest.raises(ValueError):
            record.usage.add("level1", -1, 0.0)

    def test_dict_conversion(self, record):
        assert DailyUsageRecord.from_dict(record.to_dict()) == record


class TestCheckAdmission:
    """Admission order is requests, then tokens, then cost."""

    @pytest.fixture
    def record(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return DailyUsageRecord(
            user_id="u1",
            date="2024-01-01",
            tier="free",
            usage=UsageCounters(level1_requests=5, tokens=9_500, cost=0.95),
            limits=DailyLimits(level1_requests=5, level2_requests=50, total_tokens=10_000, daily_max_cost=1.0),
            reset_at=now + timedelta(days=1),
            created_at=now,
        )

    def test_requests_checked_first(self, record):
        admission = check_admission(record, "level1", 1_000, 1.0)
        assert not admission.allowed
        assert admission.limit == "requests"
        assert admission.reason == "Daily level1 request limit exceeded (5)"
        assert admission.reset_at == record.reset_at

    def test_tokens_checked_before_cost(self, record):
        admission = check_admission(record, "level2", 1_000, 1.0)
        assert admission.limit == "tokens"
        assert "10000" in admission.reason

    def test_cost(self, record):
        admission = check_admission(record, "level2", 100, 0.10)
        assert admission.limit == "cost"
        assert admission.reason == "Daily cost limit would be exceeded (1.00)"

    def test_exactly_at_limit_is_allowed(self, record):
        admission = check_admission(record, "level2", 500, 0.05)
        assert admission.allowed
        assert admission.remaining["tokens"] == 0


class TestQuotaLedger:
    """Tests for the quota ledger."""

    @pytest.mark.asyncio
    async def test_free_tier_sixth_level1_request_rejected(self, ledger):
        for _ in range(5):
            admission = await ledger.admit_and_record("u1", "level1", 100, 0.01)
            assert admission.allowed

        admission = await ledger.admit_and_record("u1", "level1", 100, 0.01)
        assert not admission.allowed
        assert admission.limit_value == 5
        assert "(5)" in admission.reason

        with pytest.raises(QuotaExceededError) as exc_info:
            admission.raise_for_rejection("u1")
        assert exc_info.value.limit_value == 5
        assert exc_info.value.reset_at == datetime(2024, 1, 2, tzinfo=timezone.utc)

        usage = await ledger.get_usage("u1")
        assert usage.usage.level1_requests == 5

    @pytest.mark.asyncio
    async def test_can_admit_does_not_consume(self, ledger):
        for _ in range(10):
            assert (await ledger.can_admit("u1", "level1", 100, 0.01)).allowed
        usage = await ledger.get_usage("u1")
        assert usage.usage == UsageCounters()

    @pytest.mark.asyncio
    async def test_record_usage(self, ledger):
        record = await ledger.record_usage("u1", "level2", 250, 0.02)
        assert record.usage.level2_requests == 1
        assert record.usage.tokens == 250
        assert record.tier == "free"

    @pytest.mark.asyncio
    async def test_next_day_is_fresh_without_purge(self, ledger, clock, quota_store):
        await ledger.record_usage("u1", "level1", 500, 0.1)
        clock.advance(days=1)

        record = await ledger.get_usage("u1")
        assert record.date == "2024-01-02"
        assert record.usage == UsageCounters()
        # the stale record is still stored; only the purge removes it
        assert len(quota_store) == 2

    @pytest.mark.asyncio
    async def test_same_result_after_purge(self, ledger, clock, quota_store):
        await ledger.record_usage("u1", "level1", 500, 0.1)
        clock.advance(days=1)

        removed = await ledger.reset_daily_limits()
        assert removed == 1
        record = await ledger.get_usage("u1")
        assert record.usage == UsageCounters()

    @pytest.mark.asyncio
    async def test_custom_reset_time(self, quota_store, tier_table, clock):
        ledger = QuotaLedger(quota_store, tier_table, clock=clock, reset_time=time(12, 0))
        day, reset_at = ledger.quota_day()
        # 10:00 is before the 12:00 reset, so it still belongs to the previous day
        assert day == "2023-12-31"
        assert reset_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_concurrent_record_usage_loses_nothing(self, ledger):
        n = 200
        await asyncio.gather(*(ledger.record_usage("u1", "level2", 1, 0.0) for _ in range(n)))
        record = await ledger.get_usage("u1")
        assert record.usage.level2_requests == n
        assert record.usage.tokens == n

    def test_threaded_record_usage_loses_nothing(self, ledger):
        n_threads, per_thread = 8, 50

        def worker():
            async def run():
                for _ in range(per_thread):
                    await ledger.record_usage("u1", "level2", 1, 0.0)

            asyncio.run(run())

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = asyncio.run(ledger.get_usage("u1"))
        assert record.usage.level2_requests == n_threads * per_thread

    @pytest.mark.asyncio
    async def test_concurrent_admissions_never_exceed_limit(self, ledger):
        results = await asyncio.gather(
            *(ledger.admit_and_record("u1", "level1", 10, 0.0) for _ in range(20))
        )
        assert sum(1 for a in results if a.allowed) == 5
        assert (await ledger.get_usage("u1")).usage.level1_requests == 5

    @pytest.mark.asyncio
    async def test_usage_stats(self, ledger):
        await ledger.record_usage("u1", "level1", 100, 0.1)
        await ledger.record_usage("u2", "level2", 200, 0.2, tier=ledger.tiers.get("premium"))

        stats = await ledger.get_usage_stats()
        assert stats["date"] == "2024-01-01"
        assert stats["total_users"] == 2
        assert stats["users_by_tier"]["free"] == 1
        assert stats["users_by_tier"]["premium"] == 1
        assert stats["total_requests"] == {"level1": 1, "level2": 1}
        assert stats["total_tokens"] == 300
        assert stats["total_cost"] == pytest.approx(0.3)


class TestMidDayTierChange:
    """A user upgraded from free to premium after exhausting level-1 requests."""

    @pytest.fixture
    def tiers(self):
        return {"u1": "free"}

    async def exhaust_and_upgrade(self, ledger, tiers):
        for _ in range(5):
            assert (await ledger.admit_and_record("u1", "level1", 10, 0.0)).allowed
        tiers["u1"] = "premium"
        return await ledger.admit_and_record("u1", "level1", 10, 0.0)

    @pytest.mark.asyncio
    async def test_snapshot_keeps_creation_limits(self, quota_store, tier_table, clock, tiers):
        ledger = QuotaLedger(
            quota_store, tier_table, tier_lookup=tiers.get, clock=clock,
            limit_resolution=LimitResolution.SNAPSHOT,
        )
        admission = await self.exhaust_and_upgrade(ledger, tiers)
        assert not admission.allowed
        assert admission.limit_value == 5
        assert (await ledger.get_usage("u1")).tier == "free"

    @pytest.mark.asyncio
    async def test_per_request_uses_new_limits(self, quota_store, tier_table, clock, tiers):
        ledger = QuotaLedger(
            quota_store, tier_table, tier_lookup=tiers.get, clock=clock,
            limit_resolution=LimitResolution.PER_REQUEST,
        )
        admission = await self.exhaust_and_upgrade(ledger, tiers)
        assert admission.allowed
        record = admission.record
        assert record.tier == "premium"
        assert record.limits.level1_requests == 100
        assert record.usage.level1_requests == 6

    @pytest.mark.asyncio
    async def test_per_request_upgrade_lifts_block(self, quota_store, tier_table, clock, tiers):
        ledger = QuotaLedger(
            quota_store, tier_table, tier_lookup=tiers.get, clock=clock,
            limit_resolution=LimitResolution.PER_REQUEST,
        )
        for _ in range(5):
            await ledger.record_usage("u1", "level1", 10, 0.0)
        for _ in range(50):
            await ledger.record_usage("u1", "level2", 10, 0.0)
        assert (await ledger.get_usage("u1")).is_blocked

        tiers["u1"] = "premium"
        admission = await ledger.can_admit("u1", "level1", 10, 0.0)
        assert admission.allowed
        assert not admission.record.is_blocked
        assert not (await ledger.get_usage("u1")).is_blocked

    @pytest.mark.asyncio
    async def test_snapshot_new_day_picks_up_new_tier(self, quota_store, tier_table, clock, tiers):
        ledger = QuotaLedger(quota_store, tier_table, tier_lookup=tiers.get, clock=clock)
        await self.exhaust_and_upgrade(ledger, tiers)
        clock.advance(days=1)
        assert (await ledger.get_usage("u1")).limits.level1_requests == 100


class TestRedisQuotaStore:
    """Tests for the Redis compare-and-swap store with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        pipe = MagicMock()
        pipe.get.return_value = None
        client.pipeline.return_value.__enter__.return_value = pipe
        client.pipeline.return_value.__exit__.return_value = False
        return client

    @pytest.mark.asyncio
    async def test_transact_writes_new_record(self, client, ledger):
        store = RedisQuotaStore(client)
        record = (await ledger.get_usage("u1")).with_usage(UsageCounters(level2_requests=1))

        result = await store.transact("u1", "2024-01-01", lambda current: (record, "ok"))

        assert result == "ok"
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.watch.assert_called_once_with("routewise:quota:2024-01-01:u1")
        key, payload = pipe.set.call_args.args
        assert key == "routewise:quota:2024-01-01:u1"
        assert DailyUsageRecord.from_dict(json.loads(payload)) == record

    @pytest.mark.asyncio
    async def test_transact_retries_on_contention(self, client):
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.execute.side_effect = [WatchError(), WatchError(), [True]]
        calls = []

        def fn(current):
            calls.append(current)
            return None, len(calls)

        result = await RedisQuotaStore(client).transact("u1", "2024-01-01", fn)
        assert result == 3

    @pytest.mark.asyncio
    async def test_transact_gives_up(self, client):
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.execute.side_effect = WatchError()

        with pytest.raises(QuotaStoreError):
            await RedisQuotaStore(client, max_retries=3).transact(
                "u1", "2024-01-01", lambda current: (None, None)
            )

    @pytest.mark.asyncio
    async def test_purge_before(self, client):
        client.scan_iter.return_value = [
            b"routewise:quota:2023-12-30:u1",
            b"routewise:quota:2023-12-31:u2",
            b"routewise:quota:2024-01-01:u1",
        ]
        client.delete.return_value = 1

        removed = await RedisQuotaStore(client).purge_before("2024-01-01")
        assert removed == 2
        assert client.delete.call_count == 2


class TestInMemoryQuotaStore:
    @pytest.mark.asyncio
    async def test_unchanged_record_not_written(self):
        store = InMemoryQuotaStore()
        assert await store.transact("u1", "2024-01-01", lambda current: (None, "nothing")) == "nothing"
        assert len(store) == 0
