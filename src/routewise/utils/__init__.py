"""Utility modules for Routewise."""

from routewise.utils.clock import Clock, ManualClock, SystemClock
from routewise.utils.logging import bind_request_context, clear_request_context, setup_logging
from routewise.utils.metrics import RoutingMetrics
from routewise.utils.scheduler import DailySchedule, IntervalSchedule, JobScheduler

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "setup_logging",
    "bind_request_context",
    "clear_request_context",
    "RoutingMetrics",
    "DailySchedule",
    "IntervalSchedule",
    "JobScheduler",
]
