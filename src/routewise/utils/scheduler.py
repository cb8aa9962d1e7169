"""
Background job scheduling.

The service owns one JobScheduler that runs the daily quota purge and the
periodic policy reconciliation. Jobs never raise into the scheduler loop;
failures are logged and the job is rescheduled.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol

import structlog

from routewise.utils.clock import Clock, SystemClock

logger = structlog.get_logger()

JobFunc = Callable[[], Any] | Callable[[], Awaitable[Any]]


class Schedule(Protocol):
    def next_after(self, moment: datetime) -> datetime:
        """Return the first fire time strictly after ``moment``."""
        ...


@dataclass(frozen=True)
class DailySchedule:
    """Fires once per day at a fixed UTC time."""

    hour: int = 0
    minute: int = 0

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        return candidate


@dataclass(frozen=True)
class IntervalSchedule:
    """Fires every ``seconds`` seconds."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("Interval must be positive")

    def next_after(self, moment: datetime) -> datetime:
        return moment + timedelta(seconds=self.seconds)


@dataclass
class ScheduledJob:
    """A registered job and its run state."""

    name: str
    schedule: Schedule
    func: JobFunc
    next_run: datetime
    run_count: int = 0
    failure_count: int = 0
    last_run: datetime | None = None
    last_error: str | None = None
    last_result: Any = field(default=None, repr=False)

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_run

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "next_run": self.next_run.isoformat(),
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


class JobScheduler:
    """
    Runs registered jobs when their schedule comes due.

    Usage:
        scheduler = JobScheduler(clock)
        scheduler.add_job("quota_purge", DailySchedule(0, 0), ledger.reset_daily_limits)
        await scheduler.start()
        ...
        await scheduler.stop()

    Tests call ``run_due()`` directly after advancing a ManualClock.
    """

    def __init__(self, clock: Clock | None = None, tick_seconds: float = 1.0):
        self._clock = clock or SystemClock()
        self._tick_seconds = tick_seconds
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False
        self._loop_task: asyncio.Task | None = None

    def add_job(self, name: str, schedule: Schedule, func: JobFunc) -> ScheduledJob:
        """Register a job. Its first run is the schedule's next fire time."""
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = ScheduledJob(
            name=name,
            schedule=schedule,
            func=func,
            next_run=schedule.next_after(self._clock.now()),
        )
        self._jobs[name] = job
        logger.debug("Job registered", job=name, next_run=job.next_run.isoformat())
        return job

    def remove_job(self, name: str) -> None:
        self._jobs.pop(name, None)

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def running(self) -> bool:
        return self._running

    async def run_due(self) -> list[str]:
        """Run every job whose fire time has passed. Returns the names run."""
        now = self._clock.now()
        ran = []
        for job in list(self._jobs.values()):
            if not job.is_due(now):
                continue
            await self._run_job(job, now)
            ran.append(job.name)
        return ran

    async def run_now(self, name: str) -> ScheduledJob:
        """Run a job immediately without moving its next fire time."""
        job = self._jobs[name]
        next_run = job.next_run
        await self._run_job(job, self._clock.now())
        job.next_run = next_run
        return job

    async def _run_job(self, job: ScheduledJob, now: datetime) -> None:
        job.last_run = now
        job.next_run = job.schedule.next_after(now)
        try:
            if inspect.iscoroutinefunction(job.func):
                result = await job.func()
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, job.func)
            job.run_count += 1
            job.last_result = result
            job.last_error = None
            logger.debug("Job completed", job=job.name, result=result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failure_count += 1
            job.last_error = str(e)
            logger.error(
                "Scheduled job failed",
                job=job.name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Scheduler started", jobs=list(self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        self._running = False
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        logger.info("Scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while self._running:
            await self.run_due()
            await asyncio.sleep(self._tick_seconds)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }
