"""
harvester.scheduling

Per-source cron cadence (with stagger and development acceleration) and
the asyncio scheduler that drives ingestion runs.
"""

from .schedule import JobSchedule, apply_stagger, build_schedule, next_run_time
from .scheduler import JobStatus, ScheduledJob, Scheduler

__all__ = [
    "JobSchedule",
    "JobStatus",
    "ScheduledJob",
    "Scheduler",
    "apply_stagger",
    "build_schedule",
    "next_run_time",
]
