"""Polling scheduler - per-source timers and time windows."""

from nanami_alarm.scheduler.alarm import AlarmScheduler, SchedulerState, TickResult, TickStats
from nanami_alarm.scheduler.window import AlarmWindow, WindowTracker, next_window

__all__ = [
    "AlarmScheduler",
    "AlarmWindow",
    "SchedulerState",
    "TickResult",
    "TickStats",
    "WindowTracker",
    "next_window",
]
