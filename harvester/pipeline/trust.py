"""
Source trust scores used to arbitrate merge conflicts.

Official venue sources outrank ticketing platforms, which outrank
aggregators and generic scrapers. Sources missing from the table are scored
from their name (``*-official`` -> 90, ``*venue*`` -> 70, ...).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from harvester.schemas.event import EventRecord

DEFAULT_TRUST_SCORES: dict[str, int] = {
    # official venue sources
    "venue-official": 100,
    "venue-direct": 95,
    # ticketing platforms
    "ticketmaster": 90,
    "eventbrite": 85,
    "stubhub": 80,
    # music aggregators
    "songkick": 75,
    "bandsintown": 70,
    "setlist-fm": 65,
    # general aggregators
    "facebook-events": 60,
    "meetup": 55,
    "eventful": 50,
    # generic scrapers
    "rss-feed": 45,
    "web-scraper": 40,
    "unknown": 30,
}

# minimum score to accept a source's value for a kind of data
DATA_TYPE_THRESHOLDS: dict[str, int] = {
    "pricing": 80,
    "dates": 50,
    "venue": 60,
    "artists": 40,
    "metadata": 30,
}

_NAME_PATTERNS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("official", "direct"), 90),
    (("venue", ".com"), 70),
    (("facebook", "instagram"), 55),
)


def _clamp(score: float) -> int:
    return int(max(0, min(100, score)))


class TrustTable:
    """
    Read-only source -> score lookup.

    Args:
        scores: Per-source scores taking precedence over the defaults.
            Values are clamped to 0-100.
    """

    def __init__(
        self,
        scores: Mapping[str, float] | None = None,
        *,
        defaults: Mapping[str, int] = DEFAULT_TRUST_SCORES,
    ) -> None:
        self._custom = {k: _clamp(v) for k, v in (scores or {}).items()}
        self._defaults = dict(defaults)

    def score(self, source: str) -> int:
        if source in self._custom:
            return self._custom[source]
        if source in self._defaults:
            return self._defaults[source]
        lowered = source.lower()
        for needles, score in _NAME_PATTERNS:
            if any(n in lowered for n in needles):
                return score
        return self._defaults.get("unknown", 30)

    def compare(self, a: str, b: str) -> int:
        """Positive when ``a`` is more trusted than ``b``."""
        return self.score(a) - self.score(b)

    def is_trusted_for(self, source: str, data_type: str) -> bool:
        return self.score(source) >= DATA_TYPE_THRESHOLDS.get(data_type, 50)

    def source_metadata(self, records: Iterable[EventRecord]) -> dict[str, Any]:
        """
        Summary of the sources behind a merged record.

        ``primary_source`` is the most trusted one; ties go to the record
        seen first.
        """
        records = list(records)
        if not records:
            raise ValueError("source_metadata needs at least one record")
        sources = list(dict.fromkeys(r.source for r in records))
        primary = min(records, key=self.rank_key).source
        return {
            "sources": sources,
            "primary_source": primary,
            "source_count": len(sources),
            "trust_scores": {s: self.score(s) for s in sources},
        }

    def rank_key(self, record: EventRecord) -> tuple:
        """
        Sort key putting the most trusted record first.

        Ties: earliest first_seen_at, then earliest updated_at, then source
        name, then content hash, so the order never depends on input order.
        """
        first_seen = record.first_seen_at or record.updated_at
        return (-self.score(record.source), first_seen, record.updated_at, record.source, record.hash)

    def as_dict(self) -> dict[str, int]:
        merged = dict(self._defaults)
        merged.update(self._custom)
        return merged
