"""
Unit tests for Ingestor and HarvestContext.

Plugins are StaticPlugin instances; snapshots live in memory and the clock
is a FakeClock, so runs are deterministic.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from harvester.config.schema import ValidationRules
from harvester.pipeline.ingestion import HarvestContext, Ingestor, RunStats
from harvester.runtime.rate_limiter import BackoffPolicy
from harvester.storage.sinks import InMemoryEventSink, UpsertResult
from harvester.storage.snapshots import JsonSnapshotStore


@pytest.fixture
def gigs(raw_item):
    """Three distinct raw items."""
    return [raw_item("Black Midi", 13), raw_item("Squid", 14), raw_item("Dry Cleaning", 15)]


class TestIngestSource:
    """Tests for a single ingestion run."""

    @pytest.mark.asyncio
    async def test_first_run(self, create_plugin, make_context, settings, gigs, clock):
        """Every valid record is new on the first run and the snapshot is written."""
        context = make_context(create_plugin("thekla", gigs))
        ingestor = Ingestor(context, settings)

        stats = await ingestor.ingest_source("thekla", trigger="scheduled")

        assert stats.success
        assert stats.trigger == "scheduled"
        assert (stats.raw_count, stats.normalized_count, stats.valid_count) == (3, 3, 3)
        assert (stats.new_count, stats.updated_count, stats.unchanged_count) == (3, 0, 0)
        assert stats.started_at == clock()
        assert set(stats.timings) == {"fetch_s", "normalize_s", "validate_s", "save_s"}
        assert len(context.snapshots.read("thekla")) == 3
        assert context.snapshots.read_raw("thekla") == gigs

    @pytest.mark.asyncio
    async def test_identical_rerun_is_unchanged(self, create_plugin, make_context, settings, gigs, clock):
        """Re-running against identical upstream content reports no changes."""
        context = make_context(create_plugin("thekla", gigs))
        ingestor = Ingestor(context, settings)

        await ingestor.ingest_source("thekla")
        clock.advance(hours=3)
        stats = await ingestor.ingest_source("thekla")

        assert (stats.new_count, stats.updated_count, stats.unchanged_count) == (0, 0, 3)
        snapshot = context.snapshots.read("thekla")
        assert all(r.last_seen_at == clock() for r in snapshot)

    @pytest.mark.asyncio
    async def test_changed_and_missing(self, create_plugin, make_context, settings, gigs, raw_item):
        """Changed content is updated; vanished events are counted as missing."""
        plugin = create_plugin("thekla", gigs)
        context = make_context(plugin)
        ingestor = Ingestor(context, settings)
        await ingestor.ingest_source("thekla")

        plugin.raw = [raw_item("Black Midi", 13, tickets_url="https://tickets.example/black-midi"), raw_item("Squid", 14)]
        stats = await ingestor.ingest_source("thekla")

        assert (stats.new_count, stats.updated_count, stats.unchanged_count) == (0, 1, 1)
        assert stats.missing_count == 1
        assert len(context.snapshots.read("thekla")) == 2

    @pytest.mark.asyncio
    async def test_fetch_failure(self, create_plugin, make_context, settings):
        """A failing fetch ends the run unsuccessfully without raising."""
        plugin = create_plugin("thekla", error=RuntimeError("site down"))
        context = make_context(plugin)

        stats = await Ingestor(context, settings).ingest_source("thekla")

        assert not stats.success
        assert "RuntimeError: site down" in stats.errors
        assert stats.error_count == 1
        assert plugin.cleaned_up == 1
        assert context.snapshots.read("thekla") is None

    @pytest.mark.asyncio
    async def test_unknown_source(self, make_context, settings):
        """An unknown source name is a failed run, not an exception."""
        stats = await Ingestor(make_context(), settings).ingest_source("nope")
        assert not stats.success
        assert stats.errors[0].startswith("PluginNotFoundError")

    @pytest.mark.asyncio
    async def test_dropped_records(self, create_plugin, make_context, settings, gigs):
        """Records failing the source's required rules are dropped and counted."""
        plugin = create_plugin("thekla", gigs)
        plugin.config = SimpleNamespace(validation=ValidationRules(required=["urls.tickets"]))
        context = make_context(plugin)
        plugin.raw[0]["tickets_url"] = "https://tickets.example/1"

        stats = await Ingestor(context, settings).ingest_source("thekla")

        assert stats.success
        assert stats.valid_count == 1
        assert stats.dropped_count == 2
        assert stats.error_count == 2

    @pytest.mark.asyncio
    async def test_min_events_expected(self, create_plugin, make_context, settings, gigs):
        """Too few valid events fails the run and leaves the snapshot alone."""
        plugin = create_plugin("thekla", gigs)
        plugin.config = SimpleNamespace(validation=ValidationRules(min_events_expected=5))
        context = make_context(plugin)

        stats = await Ingestor(context, settings).ingest_source("thekla")

        assert not stats.success
        assert "expected at least 5" in stats.errors[0]
        assert context.snapshots.read("thekla") is None

    @pytest.mark.asyncio
    async def test_extraction_failures_reported(self, create_plugin, make_context, settings, gigs):
        """Container-level extraction failures from the plugin are surfaced."""
        plugin = create_plugin("thekla", gigs)
        plugin.last_extraction = SimpleNamespace(failures=1, failure_messages=["container 2: title missing"])

        stats = await Ingestor(make_context(plugin), settings).ingest_source("thekla")

        assert stats.success
        assert stats.extraction_failures == 1
        assert "container 2: title missing" in stats.errors

    @pytest.mark.asyncio
    async def test_sink_upsert(self, create_plugin, make_context, settings, gigs):
        """Records are upserted into the sink after the snapshot."""
        sink = InMemoryEventSink()
        ingestor = Ingestor(make_context(create_plugin("thekla", gigs), sink=sink), settings)

        first = await ingestor.ingest_source("thekla")
        second = await ingestor.ingest_source("thekla")

        assert first.inserted == 3
        assert second.inserted == 0
        assert sink.count("thekla") == 3

    @pytest.mark.asyncio
    async def test_sink_failure_is_not_fatal(self, create_plugin, make_context, settings, gigs):
        """A broken sink becomes a warning; the snapshot is still saved."""
        sink = MagicMock()
        sink.upsert.side_effect = RuntimeError("db gone")
        context = make_context(create_plugin("thekla", gigs), sink=sink)

        stats = await Ingestor(context, settings).ingest_source("thekla")

        assert stats.success
        assert "sink: db gone" in stats.warnings
        assert len(context.snapshots.read("thekla")) == 3

    @pytest.mark.asyncio
    async def test_partial_sink_failure(self, create_plugin, make_context, settings, gigs):
        """Per-record sink failures are reported as a warning."""
        sink = MagicMock()
        sink.upsert.return_value = UpsertResult(inserted=2, failed=1)

        stats = await Ingestor(make_context(create_plugin("thekla", gigs), sink=sink), settings).ingest_source("thekla")

        assert stats.inserted == 2
        assert "sink: 1 record(s) not persisted" in stats.warnings

    @pytest.mark.asyncio
    async def test_run_log_and_performance(self, create_plugin, make_context, settings, gigs):
        """Each run appends a run log entry and a performance entry."""
        context = make_context(create_plugin("thekla", gigs))
        stats = await Ingestor(context, settings).ingest_source("thekla")

        entry = context.snapshots.run_log[-1]
        assert entry["run_id"] == stats.run_id
        assert entry["new_count"] == 3
        perf = context.snapshots.performance[-1]
        assert perf["source"] == "thekla"
        assert "fetch_s" in perf["metrics"]
        # zero duration under a frozen clock
        assert perf["metrics"]["throughput"] is None

    @pytest.mark.asyncio
    async def test_fetch_retries(self, create_plugin, make_context, settings, gigs):
        """fetch_retries re-attempts a failing fetch through the limiter."""
        plugin = create_plugin("thekla", gigs)
        calls = {"n": 0}
        original = plugin.fetch_raw

        async def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("blip")
            return await original()

        plugin.fetch_raw = flaky
        context = make_context(plugin)
        context.rate_limiter.backoff = BackoffPolicy(backoff_mode="none")

        stats = await Ingestor(context, settings, fetch_retries=1).ingest_source("thekla")

        assert stats.success
        assert calls["n"] == 2


class TestRunStats:
    """Tests for RunStats."""

    def test_to_dict(self, clock):
        """Timestamps are ISO strings and derived fields are included."""
        start = clock()
        stats = RunStats(
            source="thekla",
            run_id="abc",
            trigger="manual",
            started_at=start,
            ended_at=clock.advance(seconds=2),
            success=True,
            extraction_failures=1,
            dropped_count=2,
            errors=("x",),
        )
        data = stats.to_dict()

        assert data["started_at"] == start.isoformat()
        assert data["duration_s"] == 2.0
        assert data["error_count"] == 3
        assert data["errors"] == ["x"]

    def test_frozen(self, clock):
        """RunStats cannot be changed after creation."""
        stats = RunStats(source="a", run_id="1", trigger="manual", started_at=clock(), ended_at=clock(), success=True)
        with pytest.raises(AttributeError):
            stats.success = False


class TestIngestAll:
    """Tests for ingest_all and the stats helpers."""

    @pytest.mark.asyncio
    async def test_ingest_all_respects_filters(self, create_plugin, make_context, settings, gigs):
        """Disabled sources are skipped."""
        context = make_context(create_plugin("a", gigs), create_plugin("b", gigs), create_plugin("c", gigs))
        ingestor = Ingestor(context, settings.model_copy(update={"DISABLED_SOURCES": "b"}))

        results = await ingestor.ingest_all()

        assert [r.source for r in results] == ["a", "c"]
        assert all(r.trigger == "ingest_all" for r in results)

    @pytest.mark.asyncio
    async def test_history_and_stats(self, create_plugin, make_context, settings, gigs):
        """Execution history and aggregates cover runs in memory."""
        context = make_context(create_plugin("a", gigs), create_plugin("b", error=RuntimeError("x")))
        ingestor = Ingestor(context, settings)
        await ingestor.ingest_all()
        await ingestor.ingest_source("a")

        assert len(ingestor.get_execution_history()) == 3
        assert len(ingestor.get_execution_history("a", limit=1)) == 1

        stats = ingestor.get_execution_stats()
        assert stats["total_executions"] == 3
        assert stats["successful_executions"] == 2
        assert stats["total_new"] == 3
        assert stats["total_events_processed"] == 6
        assert ingestor.get_execution_stats("zzz") == {"total_executions": 0}

    @pytest.mark.asyncio
    async def test_source_and_detailed_stats(self, create_plugin, make_context, settings, gigs):
        """Snapshot counts and recent changes are reported per source."""
        context = make_context(create_plugin("a", gigs))
        ingestor = Ingestor(context, settings)
        await ingestor.ingest_source("a")

        per_source = ingestor.get_source_stats()
        assert per_source["a"]["total"] == 3
        assert per_source["a"]["new"] == 3

        detailed = ingestor.get_detailed_stats(recent=2)
        assert detailed["totals"]["total"] == 3
        assert len(detailed["recent_changes"]) == 2
        assert detailed["recent_changes"][0]["change"] == "new"
        assert detailed["executions"]["total_executions"] == 1

    @pytest.mark.asyncio
    async def test_validate_all_snapshots(self, create_plugin, make_context, settings, gigs):
        """Stored snapshots are re-validated without being rewritten."""
        context = make_context(create_plugin("a", gigs))
        ingestor = Ingestor(context, settings)
        await ingestor.ingest_source("a")

        report = ingestor.validate_all_snapshots()

        assert report["a"]["total"] == 3
        assert report["a"]["valid"] == 3
        assert report["a"]["errors"] == []


class TestHarvestContext:
    """Tests for building a context from settings."""

    def test_from_settings(self, settings, create_plugin):
        """Plugins, file snapshots and trust overrides are wired from settings."""
        settings.CONFIG_DIR.mkdir(parents=True)
        settings = settings.model_copy(update={"TRUST_SCORES": {"feed": 20}})

        context = HarvestContext.from_settings(settings, native=[create_plugin("feed", trust_score=65), create_plugin("other", trust_score=65)])

        assert context.registry.names() == ["feed", "other"]
        assert isinstance(context.snapshots, JsonSnapshotStore)
        assert context.snapshots.normalized_dir == settings.normalized_data_dir
        assert context.trust.score("feed") == 20
        assert context.trust.score("other") == 65
        assert context.sink is None

    def test_reset(self, create_plugin, make_context):
        """reset() reloads plugins and clears limiter state."""
        context = make_context(create_plugin("a"))
        context.rate_limiter.budget_for("a", 5)
        context.reset()
        assert "a" not in context.rate_limiter.stats()
