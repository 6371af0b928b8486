"""
Logging for the harvester package.

Everything logs through ``logging.getLogger(__name__)`` below the
``harvester`` logger. ``setup_logging`` attaches the handlers once per
process; run and job code adds ``source`` / ``run_id`` / ``stage`` /
``trigger`` context with ``with_context``.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

ROOT_LOGGER = "harvester"
LOG_FILE = "harvester.log"

# (record attribute, label in text output)
CONTEXT_FIELDS: tuple[tuple[str, str], ...] = (
    ("source", "source"),
    ("run_id", "run"),
    ("stage", "stage"),
    ("trigger", "trigger"),
)

# chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    return {key: getattr(record, key) for key, _ in CONTEXT_FIELDS if getattr(record, key, None)}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, context, event."""

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }
        event = getattr(record, "event", None)
        if event:
            doc["event"] = event
            doc["payload"] = getattr(record, "payload", None) or {}
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``LEVEL logger [source=.. run=.. stage=..] message``"""

    def format(self, record: logging.LogRecord) -> str:
        ctx = record_context(record)
        labels = dict(CONTEXT_FIELDS)
        head = f"{record.levelname} {record.name}"
        if ctx:
            head += " [" + " ".join(f"{labels[k]}={v}" for k, v in ctx.items()) + "]"
        line = f"{head} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    json_logs: bool = False
    enable_console: bool = True
    # when set, also write to <log_dir>/harvester.log (rotated at 5 MB)
    log_dir: Path | None = None
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3

    @classmethod
    def from_settings(cls, settings) -> LoggingOptions:
        return cls(level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS, log_dir=settings.LOG_DIR)


def options_from_settings(settings) -> LoggingOptions:
    return LoggingOptions.from_settings(settings)


def setup_logging(options: LoggingOptions | None = None) -> logging.Logger:
    """
    Configure the ``harvester`` logger.

    Handlers installed by a previous call are replaced, so calling this
    again (e.g. after a settings reload) never duplicates output. The
    package logger stops propagating to the root logger.
    """
    options = options or LoggingOptions()
    level = getattr(logging, options.level.upper(), logging.INFO)
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    for handler in [h for h in logger.handlers if getattr(h, "_harvester", False)]:
        logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = JsonFormatter() if options.json_logs else TextFormatter()
    handlers: list[logging.Handler] = []
    if options.enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if options.log_dir is not None:
        log_dir = Path(options.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / LOG_FILE,
                maxBytes=options.max_bytes,
                backupCount=options.backup_count,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._harvester = True
        logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter whose context is merged under any per-call ``extra``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def with_context(
    logger: logging.Logger | logging.LoggerAdapter,
    *,
    run_id: str | None = None,
    source: str | None = None,
    stage: str | None = None,
    trigger: str | None = None,
) -> ContextAdapter:
    """
    Wrap ``logger`` with run context.

    Wrapping an adapter keeps its context; new values take precedence.
    """
    context: dict[str, Any] = {}
    if isinstance(logger, logging.LoggerAdapter):
        context.update(logger.extra or {})
        logger = logger.logger
    updates = {"run_id": run_id, "source": source, "stage": stage, "trigger": trigger}
    context.update({k: v for k, v in updates.items() if v})
    return ContextAdapter(logger, context)
