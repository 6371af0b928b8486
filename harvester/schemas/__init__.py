"""
Canonical data models for harvested events.
"""

from .event import (
    EventRecord,
    EventStatus,
    PriceRange,
    Venue,
    content_hash,
    create_slug,
    stable_event_id,
)

__all__ = [
    "EventRecord",
    "EventStatus",
    "PriceRange",
    "Venue",
    "content_hash",
    "create_slug",
    "stable_event_id",
]
