"""
harvester.scheduling.scheduler

Multi-job scheduler: one recurring ingestion job per source.

Tasks:
- one timer task per job posts ``tick`` when the job's cron fire time is
  reached
- a supervisor task posts ``sweep`` every health-check interval
- a single coordinator task consumes the command queue and is the only
  place job state changes

Job states:

    scheduled -> running -> scheduled
                         `-> error -> (cool-down) -> scheduled
    any       -> stopped (stop_source / stop)

A job that is already running ignores ticks and triggers. Ticks for
jobs in error are skipped until the sweep re-promotes them; manual
triggers still run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from harvester.config.settings import HarvesterSettings, get_settings
from harvester.errors import SchedulerError
from harvester.monitoring.events import emit_event
from harvester.monitoring.logging import with_context
from harvester.pipeline.ingestion import Ingestor, RunStats
from harvester.plugins.registry import PluginRegistry

from .schedule import JobSchedule, build_schedule

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class ScheduledJob:
    source: str
    schedule: JobSchedule
    status: JobStatus = JobStatus.SCHEDULED
    run_count: int = 0
    error_count: int = 0
    last_run: datetime | None = None
    last_finished: datetime | None = None
    last_success: datetime | None = None
    next_run: datetime | None = None
    last_error: str | None = None
    error_since: datetime | None = None
    last_stats: RunStats | None = None
    stuck_reported: bool = False
    # settle to stopped when the current run ends (stop_source() while
    # running, or a manual run of a stopped job)
    stop_requested: bool = False

    def to_dict(self) -> dict[str, Any]:
        def iso(dt: datetime | None) -> str | None:
            return dt.isoformat() if dt else None

        return {
            "source": self.source,
            "schedule": self.schedule.expression,
            "base_schedule": self.schedule.base,
            "status": self.status.value,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_run": iso(self.last_run),
            "last_success": iso(self.last_success),
            "next_run": iso(self.next_run),
            "last_error": self.last_error,
        }


@dataclass
class _Command:
    kind: str  # tick | trigger | start | stop | finished | sweep | shutdown
    source: str | None = None
    payload: Any = None
    reply: asyncio.Future | None = field(default=None, repr=False)
    # the run task a ``finished`` command reports on
    run: asyncio.Task | None = field(default=None, repr=False)


class Scheduler:
    """
    Drives ``Ingestor.ingest_source`` for every enabled plugin.

    Args:
        ingestor: Runs one source end to end
        registry: Plugin table (defaults to the ingestor's context registry)
        settings: Cadence, thresholds and source filters
        clock: Current time (UTC); injectable for tests
    """

    def __init__(
        self,
        ingestor: Ingestor,
        registry: PluginRegistry | None = None,
        settings: HarvesterSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ingestor = ingestor
        self.registry = registry or ingestor.context.registry
        self.settings = settings or get_settings()
        self._clock = clock

        self.jobs: dict[str, ScheduledJob] = {}
        self.is_running = False
        self.started_at: datetime | None = None

        self._queue: asyncio.Queue[_Command] | None = None
        self._coordinator: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        # runs left going by stop(); their sources stay blocked until they end
        self._abandoned: dict[str, asyncio.Task] = {}
        self._accepting = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self._build_jobs()
        self._queue = asyncio.Queue()
        self._accepting = True
        self.is_running = True
        self.started_at = self._clock()

        self._coordinator = asyncio.create_task(self._coordinate(), name="scheduler-coordinator")
        for source, job in self.jobs.items():
            job.next_run = job.schedule.next_after(self._clock())
            self._timers[source] = self._start_timer(source)
        self._supervisor = asyncio.create_task(self._supervise(), name="scheduler-supervisor")

        logger.info(
            "Scheduler started: %d job(s), mode=%s", len(self.jobs), self.settings.MODE
        )

    def _build_jobs(self) -> None:
        self.jobs.clear()
        offset = 0
        stagger = max(0, self.settings.STAGGER_MINUTES)
        for name in self.registry.names():
            if not self.settings.is_source_enabled(name):
                logger.info("Source %s disabled, skipping", name)
                continue
            plugin = self.registry.get(name)
            base = (
                self.settings.SCHEDULE_OVERRIDES.get(name)
                or plugin.meta.default_schedule
                or self.settings.default_schedule
            )
            schedule = build_schedule(
                base, stagger_minutes=offset, development=self.settings.is_development
            )
            self.jobs[name] = ScheduledJob(source=name, schedule=schedule)
            offset += stagger
            logger.info("Scheduled %s: %s", name, schedule.summary())

    async def stop(self) -> None:
        """
        Stop accepting triggers, wait for in-flight runs up to the
        shutdown timeout, then stop the coordinator. Runs still going
        after the timeout are abandoned, not cancelled.
        """
        if not self.is_running:
            logger.warning("Scheduler is not running")
            return

        logger.info("Stopping scheduler...")
        self._accepting = False
        for task in [*self._timers.values(), self._supervisor]:
            if task is not None:
                task.cancel()
        self._timers.clear()

        inflight = dict(self._inflight)
        abandoned: list[str] = []
        if inflight:
            logger.info("Waiting for %d running job(s) to complete...", len(inflight))
            _, pending = await asyncio.wait(
                inflight.values(), timeout=self.settings.SHUTDOWN_TIMEOUT_S
            )
            abandoned = sorted(s for s, t in inflight.items() if t in pending)
            self._abandoned.update({s: inflight[s] for s in abandoned})
            if abandoned:
                emit_event(
                    logger, "scheduler.abandoned", {"sources": abandoned}, level="warning"
                )

        assert self._queue is not None
        await self._queue.put(_Command("shutdown"))
        if self._coordinator is not None:
            await self._coordinator
        self._inflight.clear()

        for job in self.jobs.values():
            job.status = JobStatus.STOPPED
            job.next_run = None

        self.is_running = False
        self.started_at = None
        logger.info("Scheduler stopped")

    # ========================================================================
    # MANUAL OPERATIONS
    # ========================================================================

    async def _request(self, kind: str, source: str) -> bool:
        if not self.is_running or self._queue is None:
            raise SchedulerError("Scheduler is not running")
        if source not in self.jobs:
            logger.error("Job not found: %s", source)
            return False
        reply = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(kind, source, reply=reply))
        return await reply

    async def trigger_source(self, source: str) -> bool:
        """Run one job now. False when it is already running (or unknown)."""
        return await self._request("trigger", source)

    async def start_source(self, source: str) -> bool:
        return await self._request("start", source)

    async def stop_source(self, source: str) -> bool:
        return await self._request("stop", source)

    async def sweep_now(self) -> dict[str, Any]:
        """Run a health sweep through the coordinator and return its report."""
        if not self.is_running or self._queue is None:
            raise SchedulerError("Scheduler is not running")
        reply = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command("sweep", reply=reply))
        return await reply

    async def drain(self) -> None:
        """Wait until in-flight runs have finished and been processed."""
        while self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
            if self._queue is not None:
                await self._queue.join()
        if self._queue is not None:
            await self._queue.join()

    # ========================================================================
    # TASKS
    # ========================================================================

    def _start_timer(self, source: str) -> asyncio.Task:
        return asyncio.create_task(self._timer(source), name=f"scheduler-timer-{source}")

    async def _timer(self, source: str) -> None:
        schedule = self.jobs[source].schedule
        fire_at = schedule.next_after(self._clock())
        while True:
            delay = (fire_at - self._clock()).total_seconds()
            await asyncio.sleep(max(0.0, delay))
            # counted from this fire time even on an early wake-up; missed ones are skipped
            fire_at = schedule.next_after(max(fire_at, self._clock()))
            assert self._queue is not None
            await self._queue.put(_Command("tick", source))

    async def _supervise(self) -> None:
        while True:
            await asyncio.sleep(self.settings.HEALTH_CHECK_INTERVAL_S)
            assert self._queue is not None
            await self._queue.put(_Command("sweep"))

    async def _execute(self, source: str, trigger: str) -> None:
        try:
            stats = await self.ingestor.ingest_source(source, trigger=trigger)
        except Exception as e:
            # job boundary
            logger.error("Job %s crashed: %s", source, e, exc_info=True)
            outcome: Any = e
        else:
            outcome = stats
        assert self._queue is not None
        await self._queue.put(
            _Command("finished", source, payload=outcome, run=asyncio.current_task())
        )

    async def _coordinate(self) -> None:
        assert self._queue is not None
        while True:
            cmd = await self._queue.get()
            try:
                if cmd.kind == "shutdown":
                    return
                result = self._handle(cmd)
                if cmd.reply is not None and not cmd.reply.done():
                    cmd.reply.set_result(result)
            except Exception as e:
                logger.error("Scheduler command %s failed: %s", cmd.kind, e, exc_info=True)
                if cmd.reply is not None and not cmd.reply.done():
                    cmd.reply.set_exception(e)
            finally:
                self._queue.task_done()

    # ========================================================================
    # STATE TRANSITIONS (coordinator only)
    # ========================================================================

    def _handle(self, cmd: _Command) -> Any:
        if cmd.kind == "sweep":
            return self._sweep()
        job = self.jobs.get(cmd.source or "")
        if job is None:
            return False
        if cmd.kind == "tick":
            job.next_run = job.schedule.next_after(self._clock())
            if job.status in (JobStatus.STOPPED, JobStatus.ERROR):
                return False
            return self._launch(job, "scheduled")
        if cmd.kind == "trigger":
            return self._launch(job, "manual")
        if cmd.kind == "start":
            return self._start_job(job)
        if cmd.kind == "stop":
            return self._stop_job(job)
        if cmd.kind == "finished":
            if cmd.run is None or cmd.run is not self._inflight.get(job.source):
                logger.info("Ignoring result of an abandoned %s run", job.source)
                return False
            self._finish(job, cmd.payload)
            return True
        raise SchedulerError(f"Unknown scheduler command: {cmd.kind}")

    def _launch(self, job: ScheduledJob, trigger: str) -> bool:
        if not self._accepting:
            return False
        if job.status == JobStatus.RUNNING:
            logger.warning("Job %s is already running, skipping %s run", job.source, trigger)
            return False
        previous = self._abandoned.get(job.source)
        if previous is not None:
            if not previous.done():
                logger.warning("Abandoned %s run still going, skipping %s run", job.source, trigger)
                return False
            del self._abandoned[job.source]
        if job.status == JobStatus.STOPPED:
            # one-off run of a stopped job; it stays stopped afterwards
            job.stop_requested = True
        job.status = JobStatus.RUNNING
        job.last_run = self._clock()
        job.run_count += 1
        job.stuck_reported = False
        self._inflight[job.source] = asyncio.create_task(
            self._execute(job.source, trigger), name=f"scheduler-run-{job.source}"
        )
        logger.info("Running %s ingestion for %s (run #%d)", trigger, job.source, job.run_count)
        return True

    def _finish(self, job: ScheduledJob, outcome: RunStats | BaseException) -> None:
        self._inflight.pop(job.source, None)
        now = self._clock()
        job.last_finished = now
        log = with_context(logger, source=job.source)

        if isinstance(outcome, RunStats) and outcome.success:
            job.last_stats = outcome
            job.last_success = now
            job.status = JobStatus.SCHEDULED
            job.error_since = None
            log.info(
                "Ingestion completed: %d new, %d updated, %d errors in %.1fs",
                outcome.new_count, outcome.updated_count, outcome.error_count, outcome.duration_s,
            )
        else:
            if isinstance(outcome, RunStats):
                job.last_stats = outcome
                message = "; ".join(outcome.errors) or "Unknown error"
            else:
                message = f"{type(outcome).__name__}: {outcome}"
            job.status = JobStatus.ERROR
            job.error_count += 1
            job.last_error = message
            job.error_since = now
            emit_event(log, "job.failed", {"error": message, "run_count": job.run_count}, level="error")

        if job.stop_requested:
            job.stop_requested = False
            job.status = JobStatus.STOPPED
            job.next_run = None

    def _start_job(self, job: ScheduledJob) -> bool:
        if job.status == JobStatus.RUNNING:
            logger.warning("Job %s is already running", job.source)
            return False
        job.status = JobStatus.SCHEDULED
        job.stop_requested = False
        job.error_since = None
        job.next_run = job.schedule.next_after(self._clock())
        if job.source not in self._timers or self._timers[job.source].done():
            self._timers[job.source] = self._start_timer(job.source)
        logger.info("Started scheduled job %s", job.source)
        return True

    def _stop_job(self, job: ScheduledJob) -> bool:
        timer = self._timers.pop(job.source, None)
        if timer is not None:
            timer.cancel()
        job.next_run = None
        if job.status == JobStatus.RUNNING:
            job.stop_requested = True
        else:
            job.status = JobStatus.STOPPED
        logger.info("Stopped scheduled job %s", job.source)
        return True

    def _sweep(self) -> dict[str, Any]:
        now = self._clock()
        cooldown = timedelta(minutes=self.settings.ERROR_COOLDOWN_MINUTES)
        stuck_after = timedelta(minutes=self.settings.STUCK_THRESHOLD_MINUTES)

        for job in self.jobs.values():
            if job.status == JobStatus.ERROR and job.error_since and now - job.error_since > cooldown:
                logger.info("Auto-restarting job %s after error cool-down", job.source)
                job.status = JobStatus.SCHEDULED
                job.error_since = None
                job.next_run = job.schedule.next_after(now)
            elif (
                job.status == JobStatus.RUNNING
                and job.last_run
                and now - job.last_run > stuck_after
                and not job.stuck_reported
            ):
                job.stuck_reported = True
                emit_event(
                    with_context(logger, source=job.source),
                    "job.stuck",
                    {"running_minutes": int((now - job.last_run).total_seconds() // 60)},
                    level="warning",
                )

        health = self.get_health_status()
        for issue in health["issues"]:
            if issue["type"] == "stale":
                emit_event(
                    with_context(logger, source=issue["source"]), "job.stale", issue, level="warning"
                )

        writer = getattr(self.ingestor.context.snapshots, "append_scheduler_snapshot", None)
        if writer is not None:
            try:
                writer({"timestamp": now.isoformat(), "status": self._counts(), "jobs": self.list_jobs()})
            except OSError as e:
                logger.debug("Failed to save scheduler snapshot: %s", e)
        return health

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    def _counts(self) -> dict[str, Any]:
        jobs = list(self.jobs.values())
        uptime = (self._clock() - self.started_at).total_seconds() if self.started_at else 0.0
        return {
            "is_running": self.is_running,
            "uptime_s": uptime,
            "total_jobs": len(jobs),
            "running_jobs": sum(1 for j in jobs if j.status == JobStatus.RUNNING),
            "stopped_jobs": sum(1 for j in jobs if j.status == JobStatus.STOPPED),
            "error_jobs": sum(1 for j in jobs if j.status == JobStatus.ERROR),
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        return [self.jobs[s].to_dict() for s in sorted(self.jobs)]

    def get_status(self) -> dict[str, Any]:
        status = self._counts()
        status["started_at"] = self.started_at.isoformat() if self.started_at else None
        status["jobs"] = self.list_jobs()
        return status

    def get_health_status(self) -> dict[str, Any]:
        """
        Classify every job as healthy, error, stuck or stale.

        overall is ``critical`` with any error or stuck job, ``warning`` with
        only stale jobs, ``healthy`` otherwise.
        """
        now = self._clock()
        stuck_after = timedelta(minutes=self.settings.STUCK_THRESHOLD_MINUTES)
        stale_after = timedelta(hours=self.settings.STALE_THRESHOLD_HOURS)

        issues: list[dict[str, Any]] = []
        counts = {"healthy": 0, "error": 0, "stuck": 0, "stale": 0}
        for job in self.jobs.values():
            reference = job.last_success or self.started_at
            if job.status == JobStatus.ERROR:
                kind, message = "error", job.last_error or "Unknown error"
            elif job.status == JobStatus.RUNNING and job.last_run and now - job.last_run > stuck_after:
                minutes = int((now - job.last_run).total_seconds() // 60)
                kind, message = "stuck", f"Job running for {minutes} minutes"
            elif job.status != JobStatus.STOPPED and reference and now - reference > stale_after:
                hours = int((now - reference).total_seconds() // 3600)
                kind, message = "stale", f"No successful run for {hours} hours"
            else:
                counts["healthy"] += 1
                continue
            counts[kind] += 1
            issues.append(
                {
                    "type": kind,
                    "source": job.source,
                    "message": message,
                    "timestamp": (job.last_run or now).isoformat(),
                }
            )

        overall = "healthy"
        if counts["error"] or counts["stuck"]:
            overall = "critical"
        elif counts["stale"]:
            overall = "warning"

        return {
            "overall": overall,
            "issues": issues,
            "stats": {
                "total_jobs": len(self.jobs),
                "healthy_jobs": counts["healthy"],
                "error_jobs": counts["error"],
                "stuck_jobs": counts["stuck"],
                "stale_jobs": counts["stale"],
            },
        }

    def get_performance_summary(self) -> dict[str, Any]:
        jobs = [self.jobs[s] for s in sorted(self.jobs)]
        total_runs = sum(j.run_count for j in jobs)
        total_errors = sum(j.error_count for j in jobs)
        success_rate = (total_runs - total_errors) / total_runs * 100 if total_runs else 0.0
        return {
            "total_runs": total_runs,
            "total_errors": total_errors,
            "success_rate": round(success_rate, 2),
            "average_runs_per_job": round(total_runs / len(jobs), 2) if jobs else 0.0,
            "jobs": [
                {
                    "source": j.source,
                    "run_count": j.run_count,
                    "error_count": j.error_count,
                    "success_rate": round((j.run_count - j.error_count) / j.run_count * 100, 2)
                    if j.run_count
                    else 0.0,
                    "last_run": j.last_run.isoformat() if j.last_run else None,
                    "next_run": j.next_run.isoformat() if j.next_run else None,
                    "last_duration_s": round(j.last_stats.duration_s, 3) if j.last_stats else None,
                }
                for j in jobs
            ],
        }
