"""
harvester.storage.snapshots

Prior-snapshot store: the last normalized batch per source, read by the
change detector and rewritten at the end of every successful run.

Layout of JsonSnapshotStore:

    <normalized_dir>/<source>.normalized.json   {"source", "normalizedAt", "count", "gigs"}
    <raw_dir>/<source>.raw.json                 {"source", "fetchedAt", "count", "data"}
    <log_dir>/runs.jsonl                        one RunStats dict per line
    <log_dir>/performance-YYYY-MM-DD.jsonl      per-run stage timings
    <log_dir>/scheduler-snapshots-YYYY-MM-DD.jsonl
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from harvester.errors import PersistenceError
from harvester.schemas.event import EventRecord

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str | None) -> str:
    s = _UNSAFE.sub("_", (name or "").strip())
    return s[:120] if s.strip("_") else "unknown_source"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_jsonl(path: Path, items: Sequence[dict[str, Any]], append: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = "a" if append else "w"
    with path.open(mode, encoding="utf-8") as f:
        for item in items:
            f.write(json.dumps(item, ensure_ascii=False, default=str) + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    out: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as f:
        for n, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line %d in %s", n, path)
    return out


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    os.replace(tmp, path)


@runtime_checkable
class SnapshotStore(Protocol):
    def read(self, source: str) -> list[EventRecord] | None: ...

    def write(self, source: str, records: list[EventRecord]) -> None: ...


class JsonSnapshotStore:
    """File-backed snapshot store (one JSON document per source)."""

    def __init__(
        self,
        normalized_dir: str | Path,
        *,
        raw_dir: str | Path | None = None,
        log_dir: str | Path | None = None,
    ) -> None:
        self.normalized_dir = Path(normalized_dir)
        self.raw_dir = Path(raw_dir) if raw_dir else self.normalized_dir.parent / "raw"
        self.log_dir = Path(log_dir) if log_dir else self.normalized_dir.parent / "run-logs"

    @classmethod
    def from_settings(cls, settings) -> JsonSnapshotStore:
        return cls(settings.normalized_data_dir, raw_dir=settings.raw_data_dir, log_dir=settings.log_dir)

    # ---- normalized snapshots ----

    def path_for(self, source: str) -> Path:
        return self.normalized_dir / f"{_safe_name(source)}.normalized.json"

    def read(self, source: str) -> list[EventRecord] | None:
        path = self.path_for(source)
        if not path.exists():
            return None
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read snapshot {path}: {e}") from e

        records: list[EventRecord] = []
        for idx, item in enumerate(doc.get("gigs") or []):
            try:
                records.append(EventRecord.model_validate(item))
            except ValueError as e:
                logger.warning("Skipping invalid record %d in %s: %s", idx, path.name, e)
        return records

    def write(self, source: str, records: list[EventRecord]) -> None:
        payload = {
            "source": source,
            "normalizedAt": _now_iso(),
            "count": len(records),
            "gigs": [r.model_dump(mode="json") for r in records],
        }
        try:
            _atomic_write_json(self.path_for(source), payload)
        except OSError as e:
            raise PersistenceError(f"Could not write snapshot for {source}: {e}") from e
        logger.debug("Saved %d normalized record(s) for %s", len(records), source)

    def sources(self) -> list[str]:
        if not self.normalized_dir.is_dir():
            return []
        return sorted(p.name[: -len(".normalized.json")] for p in self.normalized_dir.glob("*.normalized.json"))

    def snapshot_meta(self, source: str) -> dict[str, Any] | None:
        """count / normalizedAt of a stored snapshot without parsing the records."""
        path = self.path_for(source)
        if not path.exists():
            return None
        doc = json.loads(path.read_text(encoding="utf-8"))
        return {"source": doc.get("source", source), "count": doc.get("count"), "normalized_at": doc.get("normalizedAt")}

    # ---- raw snapshots ----

    def raw_path_for(self, source: str) -> Path:
        return self.raw_dir / f"{_safe_name(source)}.raw.json"

    def write_raw(self, source: str, items: list[Any]) -> None:
        payload = {"source": source, "fetchedAt": _now_iso(), "count": len(items), "data": items}
        try:
            _atomic_write_json(self.raw_path_for(source), payload)
        except OSError as e:
            raise PersistenceError(f"Could not write raw data for {source}: {e}") from e

    def read_raw(self, source: str) -> list[Any] | None:
        path = self.raw_path_for(source)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8")).get("data") or []

    # ---- logs ----

    def append_run_log(self, entry: dict[str, Any]) -> None:
        write_jsonl(self.log_dir / "runs.jsonl", [entry])

    def read_run_log(self, limit: int | None = None) -> list[dict[str, Any]]:
        entries = read_jsonl(self.log_dir / "runs.jsonl")
        return entries[-limit:] if limit else entries

    def append_performance(self, entry: dict[str, Any]) -> None:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        write_jsonl(self.log_dir / f"performance-{day}.jsonl", [entry])

    def append_scheduler_snapshot(self, entry: dict[str, Any]) -> None:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        write_jsonl(self.log_dir / f"scheduler-snapshots-{day}.jsonl", [entry])


class InMemorySnapshotStore:
    """Dict-backed store for tests and one-shot runs."""

    def __init__(self) -> None:
        self._snapshots: dict[str, list[EventRecord]] = {}
        self.raw: dict[str, list[Any]] = {}
        self.run_log: list[dict[str, Any]] = []
        self.performance: list[dict[str, Any]] = []
        self.scheduler_snapshots: list[dict[str, Any]] = []

    def read(self, source: str) -> list[EventRecord] | None:
        records = self._snapshots.get(source)
        return list(records) if records is not None else None

    def write(self, source: str, records: list[EventRecord]) -> None:
        self._snapshots[source] = list(records)

    def sources(self) -> list[str]:
        return sorted(self._snapshots)

    def write_raw(self, source: str, items: list[Any]) -> None:
        self.raw[source] = list(items)

    def read_raw(self, source: str) -> list[Any] | None:
        return self.raw.get(source)

    def append_run_log(self, entry: dict[str, Any]) -> None:
        self.run_log.append(entry)

    def read_run_log(self, limit: int | None = None) -> list[dict[str, Any]]:
        return self.run_log[-limit:] if limit else list(self.run_log)

    def append_performance(self, entry: dict[str, Any]) -> None:
        self.performance.append(entry)

    def append_scheduler_snapshot(self, entry: dict[str, Any]) -> None:
        self.scheduler_snapshots.append(entry)
