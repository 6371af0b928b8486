"""
Run and job events.

Events are ordinary log records carrying ``event`` and ``payload`` extras,
so JsonFormatter emits them as structured lines and TextFormatter as
``run.completed new_count=3 ...``.
"""

from __future__ import annotations

import logging
from typing import Any

# level used when the caller does not pass one
EVENT_LEVELS: dict[str, int] = {
    "run.failed": logging.ERROR,
    "job.failed": logging.ERROR,
    "job.stuck": logging.WARNING,
    "job.stale": logging.WARNING,
    "scheduler.abandoned": logging.WARNING,
}


def _summary(payload: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in payload.items())


def emit_event(
    logger: logging.Logger | logging.LoggerAdapter,
    event: str,
    payload: dict[str, Any] | None = None,
    *,
    level: str | None = None,
) -> None:
    """Log ``event`` with its payload attached to the record."""
    payload = dict(payload or {})
    if level is None:
        lvl = EVENT_LEVELS.get(event, logging.INFO)
    else:
        lvl = getattr(logging, level.upper(), logging.INFO)
    message = f"{event} {_summary(payload)}".rstrip()
    logger.log(lvl, message, extra={"event": event, "payload": payload})
