"""Tests for clock, scheduler, metrics and logging utilities."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from routewise.utils.clock import ManualClock, SystemClock
from routewise.utils.logging import bind_request_context, clear_request_context, setup_logging
from routewise.utils.metrics import RoutingMetrics
from routewise.utils.scheduler import DailySchedule, IntervalSchedule, JobScheduler

START = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class TestClock:
    """Tests for time sources."""

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo == timezone.utc

    def test_manual_clock_advances(self):
        clock = ManualClock(START)
        assert clock.advance(hours=2) == START + timedelta(hours=2)
        assert clock.now() == START + timedelta(hours=2)

    def test_manual_clock_rejects_backwards(self):
        clock = ManualClock(START)
        with pytest.raises(ValueError):
            clock.advance(timedelta(seconds=-1))

    def test_naive_start_is_utc(self):
        clock = ManualClock(datetime(2024, 1, 1))
        assert clock.now().tzinfo == timezone.utc


class TestSchedules:
    def test_daily_later_today(self):
        assert DailySchedule(12, 30).next_after(START) == START.replace(hour=12, minute=30)

    def test_daily_rolls_to_tomorrow(self):
        assert DailySchedule(0, 0).next_after(START) == datetime(2024, 1, 2, tzinfo=timezone.utc)

    def test_daily_exact_instant_is_not_next(self):
        midnight = datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert DailySchedule(0, 0).next_after(midnight) == midnight + timedelta(days=1)

    def test_interval(self):
        assert IntervalSchedule(30).next_after(START) == START + timedelta(seconds=30)
        with pytest.raises(ValueError):
            IntervalSchedule(0)


class TestJobScheduler:
    """Tests for the job scheduler."""

    @pytest.mark.asyncio
    async def test_run_due(self):
        clock = ManualClock(START)
        scheduler = JobScheduler(clock)
        purge = AsyncMock(return_value=3)
        scheduler.add_job("quota_purge", DailySchedule(0, 0), purge)

        assert await scheduler.run_due() == []
        purge.assert_not_called()

        clock.set(datetime(2024, 1, 2, 0, 0, 1, tzinfo=timezone.utc))
        assert await scheduler.run_due() == ["quota_purge"]
        purge.assert_awaited_once()

        job = scheduler.jobs["quota_purge"]
        assert job.run_count == 1
        assert job.last_result == 3
        assert job.next_run == datetime(2024, 1, 3, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sync_job_runs_in_executor(self):
        clock = ManualClock(START)
        scheduler = JobScheduler(clock)
        reconcile = MagicMock(return_value=False)
        scheduler.add_job("policy_reconcile", IntervalSchedule(30), reconcile)

        clock.advance(seconds=30)
        await scheduler.run_due()
        reconcile.assert_called_once()

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        clock = ManualClock(START)
        scheduler = JobScheduler(clock)
        scheduler.add_job("broken", IntervalSchedule(10), AsyncMock(side_effect=RuntimeError("boom")))

        clock.advance(seconds=10)
        await scheduler.run_due()

        job = scheduler.jobs["broken"]
        assert job.failure_count == 1
        assert job.run_count == 0
        assert job.last_error == "boom"
        assert job.next_run == START + timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_run_now_keeps_schedule(self):
        clock = ManualClock(START)
        scheduler = JobScheduler(clock)
        job = scheduler.add_job("quota_purge", DailySchedule(0, 0), AsyncMock(return_value=0))
        next_run = job.next_run

        await scheduler.run_now("quota_purge")
        assert job.run_count == 1
        assert job.next_run == next_run

    def test_duplicate_job_rejected(self):
        scheduler = JobScheduler(ManualClock(START))
        scheduler.add_job("a", IntervalSchedule(1), MagicMock())
        with pytest.raises(ValueError):
            scheduler.add_job("a", IntervalSchedule(1), MagicMock())

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = JobScheduler(ManualClock(START), tick_seconds=0.01)
        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.02)
        await scheduler.stop()
        assert not scheduler.running
        assert scheduler.get_status()["running"] is False


class TestRoutingMetrics:
    """Tests for RoutingMetrics."""

    def test_record_decision(self):
        metrics = RoutingMetrics()
        metrics.record_decision("u1", "openai", "gpt-4o", "level1", "balanced", 0.03)
        metrics.record_decision("u2", "openai", "gpt-4o", "level2", "balanced", 0.01, fallback=True)

        summary = metrics.get_summary()
        assert summary["total_requests"] == 2
        stats = summary["providers"]["openai/gpt-4o"]
        assert stats["selections"] == 2
        assert stats["level1"] == 1
        assert stats["fallback_selections"] == 1
        assert summary["total_estimated_cost"] == pytest.approx(0.04)

    def test_rejection_rate(self):
        metrics = RoutingMetrics()
        metrics.record_decision("u1", "openai", "gpt-4o", "level2", "balanced", 0.0)
        metrics.record_rejection("u1", "requests", "Daily level2 request limit exceeded (50)")

        summary = metrics.get_summary()
        assert summary["rejection_rate"] == 0.5
        assert summary["rejections"] == {"requests": 1}

    def test_history_bounded(self):
        metrics = RoutingMetrics(max_history=3)
        for i in range(5):
            metrics.record_failure(f"u{i}", "NoEligibleProviderError")
        recent = metrics.get_recent()
        assert [r["user_id"] for r in recent] == ["u2", "u3", "u4"]

    def test_reset(self):
        metrics = RoutingMetrics()
        metrics.record_failure("u1", "NoEligibleProviderError")
        metrics.reset()
        assert metrics.get_summary()["total_requests"] == 0


class TestLogging:
    def test_setup_logging_json(self):
        with patch("routewise.utils.logging.structlog.configure") as configure:
            setup_logging(level="DEBUG", json_format=True)
        processors = configure.call_args.kwargs["processors"]
        assert type(processors[-1]).__name__ == "JSONRenderer"

    def test_setup_logging_console(self):
        with patch("routewise.utils.logging.structlog.configure") as configure:
            setup_logging(level="INFO", json_format=False)
        processors = configure.call_args.kwargs["processors"]
        assert type(processors[-1]).__name__ == "ConsoleRenderer"

    def test_request_context(self):
        import structlog

        bind_request_context(decision_id="abc", user_id="u1")
        assert structlog.contextvars.get_contextvars() == {"decision_id": "abc", "user_id": "u1"}
        clear_request_context()
        assert structlog.contextvars.get_contextvars() == {}
