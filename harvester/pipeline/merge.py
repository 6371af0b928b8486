"""
Cross-source reconciliation of duplicate event reports.

Two steps:

1. Group records describing the same real-world event
   (EventDeduplicator strategies)
2. Merge each group into one record by source trust (merge_duplicates)

Merge rules:
- candidates are ranked by trust (TrustTable.rank_key); the top one seeds
  the result and keeps its identity, title and status
- list fields (artists, genre, images) are unioned, order preserved,
  for candidates as trusted as the seed; less trusted candidates only
  fill empty lists
- scalar fields are overwritten only by a strictly more trusted
  candidate; otherwise a candidate only fills missing values
- venue sub-fields are gap-filled
- the most recent updated_at and the earliest first_seen_at are kept
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from difflib import SequenceMatcher
from typing import Any

from harvester.schemas.event import EventRecord, content_hash

from .trust import TrustTable

logger = logging.getLogger(__name__)

LIST_FIELDS = ("artists", "genre", "images")
SCALAR_FIELDS = ("price", "tickets_url", "event_url", "date_end", "timezone", "age_restriction")
VENUE_FIELDS = ("name", "address", "city", "country", "lat", "lng")

DEFAULT_TITLE_THRESHOLD = 0.75
DEFAULT_TOLERANCE_HOURS = 2.0

_PUNCT = re.compile(r"[^\w\s&]")
_WS = re.compile(r"\s+")
_NOISE_WORDS = re.compile(r"\b(the|live|concert|show|event)\b")
_VENUE_WORDS = re.compile(r"\b(club|bar|pub|venue|hall|center|centre|theatre|theater|arena|stadium)\b")
_TITLE_WORDS = re.compile(r"\b(presents|featuring|feat|ft|with|plus|vs|versus|tour|world tour|album|ep|single)\b")


# ---------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------

def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    s = _PUNCT.sub("", text.lower().replace("+", " "))
    s = re.sub(r"\band\b", "&", s)
    s = _NOISE_WORDS.sub("", s)
    return _WS.sub(" ", s).strip()


def normalize_venue_name(name: str | None) -> str:
    return _WS.sub(" ", _VENUE_WORDS.sub("", normalize_text(name))).strip()


def normalize_title(title: str | None) -> str:
    return _WS.sub(" ", _TITLE_WORDS.sub(" ", normalize_text(title))).strip()


def title_similarity(a: str | None, b: str | None) -> float:
    na, nb = normalize_title(a), normalize_title(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


# ---------------------------------------------------------------------
# Grouping strategies
# ---------------------------------------------------------------------

class EventDeduplicator(ABC):
    """
    Abstract base for duplicate-detection strategies
    """

    @abstractmethod
    def find_groups(self, records: list[EventRecord]) -> list[list[EventRecord]]:
        """
        Partition records into groups describing the same event.

        Every record appears in exactly one group; singletons included.
        """


class ExactMatchDeduplicator(EventDeduplicator):
    """
    Match by stable id (venue + title + start + city)
    """

    def find_groups(self, records: list[EventRecord]) -> list[list[EventRecord]]:
        groups: dict[str, list[EventRecord]] = {}
        for record in records:
            groups.setdefault(record.id, []).append(record)
        return list(groups.values())


class FuzzyMatchDeduplicator(EventDeduplicator):
    """
    Same normalized venue, similar title and start times within tolerance.

    Records with the same stable id always match.
    """

    def __init__(
        self,
        *,
        title_threshold: float = DEFAULT_TITLE_THRESHOLD,
        tolerance_hours: float = DEFAULT_TOLERANCE_HOURS,
    ) -> None:
        self.title_threshold = title_threshold
        self.tolerance = timedelta(hours=tolerance_hours)

    def is_duplicate(self, a: EventRecord, b: EventRecord) -> bool:
        if a.id == b.id:
            return True
        if normalize_venue_name(a.venue.name) != normalize_venue_name(b.venue.name):
            return False
        if abs(a.date_start - b.date_start) > self.tolerance:
            return False
        return title_similarity(a.title, b.title) >= self.title_threshold

    def find_groups(self, records: list[EventRecord]) -> list[list[EventRecord]]:
        # bucket by venue so only plausible pairs are compared
        buckets: dict[str, list[EventRecord]] = {}
        for record in sorted(records, key=lambda r: (r.date_start, r.source, r.id)):
            buckets.setdefault(normalize_venue_name(record.venue.name), []).append(record)

        groups: list[list[EventRecord]] = []
        for bucket in buckets.values():
            assigned = [False] * len(bucket)
            for i, seed in enumerate(bucket):
                if assigned[i]:
                    continue
                assigned[i] = True
                group = [seed]
                for j in range(i + 1, len(bucket)):
                    if not assigned[j] and self.is_duplicate(seed, bucket[j]):
                        assigned[j] = True
                        group.append(bucket[j])
                groups.append(group)
        return groups


def find_duplicate_groups(
    records: list[EventRecord],
    *,
    title_threshold: float = DEFAULT_TITLE_THRESHOLD,
    tolerance_hours: float = DEFAULT_TOLERANCE_HOURS,
) -> list[list[EventRecord]]:
    """Groups of two or more records judged to be the same event."""
    dedupe = FuzzyMatchDeduplicator(title_threshold=title_threshold, tolerance_hours=tolerance_hours)
    return [g for g in dedupe.find_groups(records) if len(g) > 1]


# ---------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------

def _union(*lists: list[str]) -> list[str]:
    return list(dict.fromkeys(x for lst in lists for x in lst))


def merge_duplicates(candidates: list[EventRecord], trust: TrustTable) -> EventRecord:
    """
    Merge records describing one event into a single record.

    A single candidate is returned as is.
    """
    if not candidates:
        raise ValueError("Cannot merge an empty list of records")
    if len(candidates) == 1:
        return candidates[0]

    ordered = sorted(candidates, key=trust.rank_key)
    base = ordered[0]
    base_trust = trust.score(base.source)

    data: dict[str, Any] = base.model_dump()
    venue = dict(data["venue"])

    for cand in ordered[1:]:
        prefer = trust.score(cand.source) > base_trust
        peer = trust.score(cand.source) == base_trust

        for name in LIST_FIELDS:
            values = getattr(cand, name)
            if values and (peer or prefer or not data[name]):
                data[name] = _union(data[name], values)

        for name in VENUE_FIELDS:
            if venue.get(name) is None:
                venue[name] = getattr(cand.venue, name)

        for name in SCALAR_FIELDS:
            value = getattr(cand, name)
            if value is None:
                continue
            if prefer or data[name] is None:
                data[name] = value.model_dump() if name == "price" else value

        if cand.updated_at > data["updated_at"]:
            data["updated_at"] = cand.updated_at
        if cand.first_seen_at and (data["first_seen_at"] is None or cand.first_seen_at < data["first_seen_at"]):
            data["first_seen_at"] = cand.first_seen_at
        if cand.last_seen_at and (data["last_seen_at"] is None or cand.last_seen_at > data["last_seen_at"]):
            data["last_seen_at"] = cand.last_seen_at

    data["venue"] = venue
    data["hash"] = ""
    merged = EventRecord.model_validate(data)
    # the seed keeps its identity even if gap-filled venue data changed
    return merged.model_copy(update={"id": base.id, "hash": content_hash(merged)})


# ---------------------------------------------------------------------
# Reconciliation pass
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MergeGroup:
    id: str
    member_ids: tuple[str, ...]
    sources: tuple[str, ...]
    primary_source: str
    trust_scores: dict[str, int] = field(default_factory=dict)

    @property
    def source_count(self) -> int:
        return len(self.sources)


@dataclass
class ReconcileResult:
    records: list[EventRecord]
    groups: list[MergeGroup] = field(default_factory=list)
    duplicates_removed: int = 0

    @property
    def merged_groups(self) -> int:
        return len(self.groups)

    def source_stats(self, original: list[EventRecord]) -> dict[str, dict[str, int]]:
        """Per-source counts before and after reconciliation."""
        before: dict[str, int] = {}
        for r in original:
            before[r.source] = before.get(r.source, 0) + 1
        after: dict[str, int] = {}
        for r in self.records:
            after[r.source] = after.get(r.source, 0) + 1
        return {
            s: {"original": n, "after_dedup": after.get(s, 0), "duplicates_removed": n - after.get(s, 0)}
            for s, n in sorted(before.items())
        }


def reconcile(
    records: list[EventRecord],
    trust: TrustTable,
    *,
    deduplicator: EventDeduplicator | None = None,
) -> ReconcileResult:
    """Group duplicates across sources and merge each group by trust."""
    dedupe = deduplicator or FuzzyMatchDeduplicator()
    out: list[EventRecord] = []
    groups: list[MergeGroup] = []

    for group in dedupe.find_groups(records):
        if len(group) == 1:
            out.append(group[0])
            continue
        merged = merge_duplicates(group, trust)
        meta = trust.source_metadata(group)
        groups.append(
            MergeGroup(
                id=merged.id,
                member_ids=tuple(r.id for r in group),
                sources=tuple(meta["sources"]),
                primary_source=meta["primary_source"],
                trust_scores=meta["trust_scores"],
            )
        )
        out.append(merged)

    removed = len(records) - len(out)
    if groups:
        logger.info(
            "Reconciled %d record(s) into %d: %d duplicate group(s)", len(records), len(out), len(groups)
        )
    return ReconcileResult(records=out, groups=groups, duplicates_removed=removed)
