"""
harvester.scheduling.schedule

Cron cadence helpers for scheduled sources.

- apply_stagger: shift a cron expression's minute field by N minutes
- accelerate_for_development: step schedules ("*/N", "0 */3") run every
  10 minutes in development mode
- next_run_time / next_run_times: fire times computed with croniter
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass

from croniter import croniter

logger = logging.getLogger(__name__)

DEVELOPMENT_CADENCE = "*/10 * * * *"


def is_valid_cron(expr: str) -> bool:
    return len(expr.split()) == 5 and croniter.is_valid(expr)


def _shift_minute(part: str, offset: int) -> str:
    if part.isdigit():
        return str((int(part) + offset) % 60)
    if part.startswith("*/") and part[2:].isdigit():
        step = int(part[2:])
        start = offset % step
        return f"{start}-59/{step}" if start else part
    if "," in part and all(p.isdigit() for p in part.split(",")):
        return ",".join(str(m) for m in sorted((int(p) + offset) % 60 for p in part.split(",")))
    # "*" and ranges are left alone
    return part


def apply_stagger(expr: str, offset_minutes: int) -> str:
    """
    Add ``offset_minutes`` to the minute field, wrapping at 60.

    >>> apply_stagger("0 */3 * * *", 5)
    '5 */3 * * *'
    >>> apply_stagger("*/10 * * * *", 5)
    '5-59/10 * * * *'
    """
    parts = expr.split()
    if len(parts) != 5 or offset_minutes <= 0:
        if len(parts) != 5:
            logger.warning("Invalid cron schedule %r; using as-is", expr)
        return expr
    parts[0] = _shift_minute(parts[0], offset_minutes)
    adjusted = " ".join(parts)
    logger.debug("Staggered schedule %r -> %r (+%d min)", expr, adjusted, offset_minutes)
    return adjusted


def accelerate_for_development(expr: str) -> str:
    if "*/" in expr:
        return DEVELOPMENT_CADENCE
    return expr


def next_run_time(expr: str, after: datetime.datetime) -> datetime.datetime:
    """First fire time strictly after ``after`` (timezone preserved)."""
    return croniter(expr, after).get_next(datetime.datetime)


def next_run_times(expr: str, after: datetime.datetime, n: int = 5) -> list[datetime.datetime]:
    it = croniter(expr, after)
    return [it.get_next(datetime.datetime) for _ in range(n)]


@dataclass(frozen=True)
class JobSchedule:
    """Effective cadence of one job and how it was derived."""

    base: str
    expression: str
    stagger_minutes: int = 0

    def next_after(self, after: datetime.datetime) -> datetime.datetime:
        return next_run_time(self.expression, after)

    def summary(self) -> str:
        if self.expression == self.base:
            return f"cron: {self.expression}"
        return f"cron: {self.expression} (from {self.base}, +{self.stagger_minutes}m)"


def build_schedule(base: str, *, stagger_minutes: int = 0, development: bool = False) -> JobSchedule:
    expr = accelerate_for_development(base) if development else base
    expr = apply_stagger(expr, stagger_minutes)
    return JobSchedule(base=base, expression=expr, stagger_minutes=stagger_minutes)
