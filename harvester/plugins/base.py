"""
Source plugin contract.

Every source, declarative or hand-written, is exposed to the engine as a
SourcePlugin:

    fetch_raw()  -> list of raw dicts   (owns its browser/http session)
    normalize()  -> list of EventRecord (pure, no I/O)
    cleanup()    -> release anything still held (optional)

Architecture:
    SourceConfig ──compile──> DeclarativePlugin ─┐
                                                 ├─> PluginRegistry -> Ingestor
    hand-written subclass ───────────────────────┘
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from harvester.config.schema import DEFAULT_SCHEDULE, DEFAULT_TRUST_SCORE
from harvester.schemas.event import EventRecord


@dataclass(frozen=True)
class PluginMeta:
    """Static description of a plugin."""

    name: str
    rate_limit_per_min: int = 10
    default_schedule: str = DEFAULT_SCHEDULE
    trust_score: int = DEFAULT_TRUST_SCORE
    description: str | None = None
    website: str | None = None
    # "declarative" | "native"
    kind: str = "native"


class SourcePlugin(ABC):
    """
    Abstract base class for every event source.

    Subclasses must set ``meta`` and implement fetch_raw / normalize.
    """

    meta: PluginMeta

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"harvester.plugin.{self.meta.name}")

    @abstractmethod
    async def fetch_raw(self) -> list[dict[str, Any]]:
        """
        Fetch raw listings from the source.

        Implementations acquire and release their own session, including
        on error.
        """

    @abstractmethod
    def normalize(self, raw: list[dict[str, Any]]) -> list[EventRecord]:
        """Map raw listings to EventRecords. Must not perform I/O."""

    async def cleanup(self) -> None:
        """Release resources still held after a run. Default: nothing."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.meta.name!r})"
