"""
Ingestion run: one source, end to end.

    plugin.fetch_raw()      (under the source's rate budget)
      -> raw snapshot
      -> plugin.normalize()
      -> validate_batch()   (repair or drop, source rules)
      -> ChangeDetector     (vs. previous snapshot)
      -> snapshot write
      -> sink upsert        (non-fatal)
      -> RunStats           (history, run log, performance metrics)

A run never raises: every failure ends up in the returned RunStats.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from harvester.config.loader import LoadOptions
from harvester.config.schema import ValidationRules
from harvester.config.settings import HarvesterSettings, get_settings
from harvester.errors import HarvesterError, PersistenceError, ValidationFailed
from harvester.monitoring.events import emit_event
from harvester.monitoring.logging import with_context
from harvester.plugins.base import SourcePlugin
from harvester.plugins.registry import NativeSpec, PluginRegistry
from harvester.runtime.rate_limiter import BackoffPolicy, RateLimiter
from harvester.schemas.event import EventRecord
from harvester.storage.sinks import EventSink, SqlEventSink
from harvester.storage.snapshots import JsonSnapshotStore, SnapshotStore

from .change_detector import ChangeDetector
from .trust import TrustTable
from .validators import validate_batch

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RunStats:
    """Outcome of one ingestion run. Immutable once built."""

    source: str
    run_id: str
    trigger: str
    started_at: datetime
    ended_at: datetime
    success: bool
    raw_count: int = 0
    normalized_count: int = 0
    valid_count: int = 0
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    missing_count: int = 0
    dropped_count: int = 0
    extraction_failures: int = 0
    inserted: int = 0
    persisted_updates: int = 0
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def duration_s(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def error_count(self) -> int:
        return self.extraction_failures + self.dropped_count + (0 if self.success else 1)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["ended_at"] = self.ended_at.isoformat()
        data["errors"] = list(self.errors)
        data["warnings"] = list(self.warnings)
        data["duration_s"] = round(self.duration_s, 3)
        data["error_count"] = self.error_count
        return data


@dataclass
class HarvestContext:
    """
    Everything a run needs, passed explicitly instead of living in globals.

    Several contexts can coexist (tests, multiple schedulers).
    """

    registry: PluginRegistry
    snapshots: SnapshotStore
    trust: TrustTable = field(default_factory=TrustTable)
    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    sink: EventSink | None = None
    clock: Callable[[], datetime] = _utc_now

    @classmethod
    def from_settings(
        cls,
        settings: HarvesterSettings | None = None,
        *,
        native: Iterable[NativeSpec] | None = None,
    ) -> HarvestContext:
        settings = settings or get_settings()
        registry = PluginRegistry(
            settings.CONFIG_DIR,
            native=native,
            load_options=LoadOptions(),
            plugin_kwargs={"artifacts_dir": settings.DATA_DIR / "debug"},
        ).load()

        # declared plugin scores first, operator overrides on top
        scores = {p.name: p.meta.trust_score for p in registry.all()}
        scores.update(settings.TRUST_SCORES)

        sink = SqlEventSink(settings.DATABASE_URL) if settings.DATABASE_URL else None
        return cls(
            registry=registry,
            snapshots=JsonSnapshotStore.from_settings(settings),
            trust=TrustTable(scores),
            rate_limiter=RateLimiter(
                interval_s=settings.RATE_LIMIT_INTERVAL_S,
                backoff=BackoffPolicy(
                    base_delay_s=settings.BACKOFF_BASE_S,
                    max_delay_s=settings.BACKOFF_MAX_S,
                ),
            ),
            sink=sink,
        )

    def reset(self) -> None:
        """Reload plugins and forget rate-limit state."""
        self.registry.reload()
        self.rate_limiter.reset()


class Ingestor:
    """
    Runs sources through the pipeline and keeps their run history.

    Args:
        context: Registry, stores and limiter shared with the scheduler
        settings: Defaults to the cached application settings
        fetch_retries: Extra fetch attempts, with backoff, before a run fails
    """

    def __init__(
        self,
        context: HarvestContext,
        settings: HarvesterSettings | None = None,
        *,
        fetch_retries: int = 0,
        detector: ChangeDetector | None = None,
    ) -> None:
        self.context = context
        self.settings = settings or get_settings()
        self.fetch_retries = fetch_retries
        self.detector = detector or ChangeDetector()
        self.history: list[RunStats] = []

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def ingest_source(self, source: str, *, trigger: str = "manual") -> RunStats:
        run_id = uuid.uuid4().hex[:12]
        log = with_context(logger, run_id=run_id, source=source, trigger=trigger)
        started = self.context.clock()
        emit_event(log, "run.started", {"trigger": trigger})

        counts: dict[str, int] = {}
        timings: dict[str, float] = {}
        warnings: list[str] = []
        errors: list[str] = []
        plugin: SourcePlugin | None = None
        success = True

        try:
            plugin = self.context.registry.get(source)
            await self._run(plugin, log, counts, timings, warnings, errors)
        except Exception as e:
            # run boundary: nothing escapes to the scheduler
            success = False
            errors.append(f"{type(e).__name__}: {e}")
            log.error("Run failed: %s", e, exc_info=not isinstance(e, HarvesterError))
        finally:
            if plugin is not None:
                try:
                    await plugin.cleanup()
                except Exception as e:
                    log.warning("Plugin cleanup failed: %s", e)

        stats = RunStats(
            source=source,
            run_id=run_id,
            trigger=trigger,
            started_at=started,
            ended_at=self.context.clock(),
            success=success,
            errors=tuple(errors),
            warnings=tuple(warnings),
            timings=timings,
            **counts,
        )
        self._record(stats, log)
        return stats

    async def _run(
        self,
        plugin: SourcePlugin,
        log: logging.LoggerAdapter,
        counts: dict[str, int],
        timings: dict[str, float],
        warnings: list[str],
        errors: list[str],
    ) -> None:
        source = plugin.name
        snapshots = self.context.snapshots
        budget = plugin.meta.rate_limit_per_min or self.settings.DEFAULT_RATE_LIMIT_PER_MIN

        # ---- fetch ----
        t0 = time.perf_counter()
        raw = await self.context.rate_limiter.schedule(
            source, budget, plugin.fetch_raw, retries=self.fetch_retries
        )
        timings["fetch_s"] = time.perf_counter() - t0
        counts["raw_count"] = len(raw)

        extraction = getattr(plugin, "last_extraction", None)
        if extraction is not None:
            counts["extraction_failures"] = extraction.failures
            errors.extend(extraction.failure_messages)

        write_raw = getattr(snapshots, "write_raw", None)
        if write_raw is not None:
            try:
                write_raw(source, raw)
            except PersistenceError as e:
                warnings.append(str(e))
                log.warning("Raw snapshot not saved: %s", e)

        # ---- normalize ----
        t0 = time.perf_counter()
        records = plugin.normalize(raw)
        timings["normalize_s"] = time.perf_counter() - t0
        counts["normalized_count"] = len(records)
        with_context(log, stage="normalize").info("%d raw -> %d normalized", len(raw), len(records))

        # ---- validate ----
        t0 = time.perf_counter()
        rules = self._rules_for(plugin)
        batch = validate_batch(records, rules, strict=self.settings.STRICT_VALIDATION)
        timings["validate_s"] = time.perf_counter() - t0
        counts["valid_count"] = len(batch.valid)
        counts["dropped_count"] = batch.dropped
        warnings.extend(i.message for i in batch.issues if i.level == "warning" and i.record_id is None)
        if rules.min_events_expected and len(batch.valid) < rules.min_events_expected:
            raise ValidationFailed(
                f"{len(batch.valid)} valid event(s), expected at least {rules.min_events_expected}"
            )

        # ---- detect + snapshot ----
        t0 = time.perf_counter()
        previous = snapshots.read(source)
        changes = self.detector.detect(batch.valid, previous, now=self.context.clock())
        counts["new_count"] = len(changes.new)
        counts["updated_count"] = len(changes.updated)
        counts["unchanged_count"] = len(changes.unchanged)
        counts["missing_count"] = len(changes.missing_ids)
        merged = changes.merged()
        snapshots.write(source, merged)

        # ---- persist (non-fatal) ----
        if self.context.sink is not None and merged:
            try:
                result = self.context.sink.upsert(merged)
            except Exception as e:
                warnings.append(f"sink: {e}")
                with_context(log, stage="persist").error("Sink upsert failed: %s", e)
            else:
                counts["inserted"] = result.inserted
                counts["persisted_updates"] = result.updated
                if result.failed:
                    warnings.append(f"sink: {result.failed} record(s) not persisted")
        timings["save_s"] = time.perf_counter() - t0

    def _rules_for(self, plugin: SourcePlugin) -> ValidationRules:
        config = getattr(plugin, "config", None)
        rules = getattr(config, "validation", None)
        return rules if isinstance(rules, ValidationRules) else ValidationRules()

    def _record(self, stats: RunStats, log: logging.LoggerAdapter) -> None:
        self.history.append(stats)
        payload = stats.to_dict()
        emit_event(
            log,
            "run.completed" if stats.success else "run.failed",
            {k: payload[k] for k in ("raw_count", "valid_count", "new_count", "updated_count", "unchanged_count", "error_count", "duration_s")},
            level="info" if stats.success else "error",
        )

        snapshots = self.context.snapshots
        total = stats.duration_s
        metrics = {
            "timestamp": stats.ended_at.isoformat(),
            "source": stats.source,
            "run_id": stats.run_id,
            "metrics": {
                **{k: round(v, 4) for k, v in stats.timings.items()},
                "total_s": round(total, 4),
                "throughput": round(stats.valid_count / total, 2) if total > 0 else None,
            },
        }
        for writer, entry in (("append_run_log", payload), ("append_performance", metrics)):
            fn = getattr(snapshots, writer, None)
            if fn is None:
                continue
            try:
                fn(entry)
            except OSError as e:
                log.warning("Could not write %s: %s", writer, e)

    async def ingest_all(self, *, trigger: str = "ingest_all") -> list[RunStats]:
        """Run every enabled source, one after the other."""
        names = [n for n in self.context.registry.names() if self.settings.is_source_enabled(n)]
        results = [await self.ingest_source(name, trigger=trigger) for name in names]
        ok = sum(1 for r in results if r.success)
        logger.info(
            "Ingested %d source(s): %d succeeded, %d failed, %d new, %d updated",
            len(results), ok, len(results) - ok,
            sum(r.new_count for r in results), sum(r.updated_count for r in results),
        )
        return results

    # ========================================================================
    # HISTORY & STATS
    # ========================================================================

    def get_execution_history(self, source: str | None = None, limit: int = 10) -> list[RunStats]:
        results = self.history
        if source:
            results = [r for r in results if r.source == source]
        return results[-limit:]

    def get_execution_stats(self, source: str | None = None) -> dict[str, Any]:
        """Aggregate statistics about runs held in memory."""
        results = self.history
        if source:
            results = [r for r in results if r.source == source]

        if not results:
            return {"total_executions": 0}

        successful = sum(1 for r in results if r.success)
        total_events = sum(r.valid_count for r in results)
        return {
            "total_executions": len(results),
            "successful_executions": successful,
            "success_rate": successful / len(results) * 100,
            "total_events_processed": total_events,
            "total_new": sum(r.new_count for r in results),
            "total_updated": sum(r.updated_count for r in results),
            "total_errors": sum(r.error_count for r in results),
            "average_events_per_run": total_events / len(results),
            "average_duration_s": sum(r.duration_s for r in results) / len(results),
        }

    def _snapshot_sources(self) -> list[str]:
        sources = getattr(self.context.snapshots, "sources", None)
        return sources() if sources is not None else self.context.registry.names()

    def get_source_stats(self) -> dict[str, dict[str, Any]]:
        """Per-source counts over the stored snapshots."""
        out: dict[str, dict[str, Any]] = {}
        for source in self._snapshot_sources():
            records = self.context.snapshots.read(source)
            if records is None:
                continue
            last_seen = [r.last_seen_at for r in records if r.last_seen_at]
            out[source] = {
                "total": len(records),
                "new": sum(1 for r in records if r.is_new),
                "updated": sum(1 for r in records if r.is_updated),
                "unchanged": sum(1 for r in records if not (r.is_new or r.is_updated)),
                "last_seen_at": max(last_seen).isoformat() if last_seen else None,
            }
        return out

    def get_detailed_stats(self, recent: int = 10) -> dict[str, Any]:
        """Snapshot counts, totals and the most recent new/updated records."""
        per_source = self.get_source_stats()
        changed: list[EventRecord] = []
        for source in per_source:
            changed.extend(
                r for r in self.context.snapshots.read(source) or [] if r.is_new or r.is_updated
            )
        changed.sort(key=lambda r: r.updated_at, reverse=True)
        return {
            "sources": per_source,
            "totals": {
                key: sum(s[key] for s in per_source.values())
                for key in ("total", "new", "updated", "unchanged")
            },
            "recent_changes": [
                {
                    "id": r.id,
                    "source": r.source,
                    "title": r.title,
                    "change": "new" if r.is_new else "updated",
                    "updated_at": r.updated_at.isoformat(),
                }
                for r in changed[:recent]
            ],
            "executions": self.get_execution_stats(),
        }

    def validate_all_snapshots(self) -> dict[str, dict[str, Any]]:
        """Re-run validation over every stored snapshot without rewriting it."""
        report: dict[str, dict[str, Any]] = {}
        for source in self._snapshot_sources():
            records = self.context.snapshots.read(source)
            if records is None:
                continue
            rules = ValidationRules()
            if source in self.context.registry:
                rules = self._rules_for(self.context.registry.get(source))
            batch = validate_batch(records, rules, strict=self.settings.STRICT_VALIDATION)
            report[source] = {
                "total": len(records),
                "valid": len(batch.valid),
                "dropped": batch.dropped,
                "repaired": batch.repaired,
                "errors": [i.message for i in batch.errors()],
            }
        return report
