# harvester/schemas/event.py
"""
Canonical event record ("gig") produced by every source.

Each plugin normalizes its raw listings into EventRecord objects. Two values
are derived from semantic fields only and are therefore stable across runs:

- ``id``: slug of venue name, title, start time and city
- ``hash``: SHA-256 of the canonical JSON of the content fields

Change tracking fields (is_new, is_updated, first/last seen) are stamped by
the change detector, never by plugins.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# Fields covered by the content hash. Order is irrelevant (keys are sorted).
HASHED_FIELDS: tuple[str, ...] = (
    "title",
    "artists",
    "genre",
    "date_start",
    "date_end",
    "venue",
    "price",
    "age_restriction",
    "status",
    "tickets_url",
    "event_url",
)

_SLUG_STRIP = re.compile(r"[^\w\s-]")
_SLUG_SEP = re.compile(r"[\s_-]+")


def create_slug(text: str) -> str:
    """
    Lowercase, drop punctuation and collapse separators into single dashes.

    >>> create_slug("The Fleece & Firkin!")
    'the-fleece-firkin'
    """
    s = (text or "").lower().strip()
    s = _SLUG_STRIP.sub("", s)
    s = _SLUG_SEP.sub("-", s)
    return s.strip("-")


class EventStatus(str, Enum):
    """Lifecycle status of a listing. Records are retired, never deleted."""

    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"


class Venue(BaseModel):
    """
    Where the event takes place. Only the name is required.
    """

    name: str = Field(..., min_length=1)
    address: str | None = None
    city: str | None = None
    country: str | None = None
    lat: float | None = None
    lng: float | None = None

    @field_validator("lat")
    @classmethod
    def validate_lat(cls, v):
        if v is not None and not -90 <= v <= 90:
            raise ValueError("Latitude must be between -90 and 90")
        return v

    @field_validator("lng")
    @classmethod
    def validate_lng(cls, v):
        if v is not None and not -180 <= v <= 180:
            raise ValueError("Longitude must be between -180 and 180")
        return v


class PriceRange(BaseModel):
    min: float | None = Field(default=None, ge=0)
    max: float | None = Field(default=None, ge=0)
    currency: str = Field(default="GBP", description="ISO 4217 currency code")

    @model_validator(mode="after")
    def validate_range(self):
        if self.min is not None and self.max is not None and self.max < self.min:
            raise ValueError("price.max cannot be less than price.min")
        return self


class EventRecord(BaseModel):
    """
    Normalized listing for one real-world event as reported by one source.

    ``id`` and ``hash`` are filled automatically when not supplied, so a
    record built by a plugin is always addressable.
    """

    model_config = ConfigDict(
        use_enum_values=True,
        json_schema_extra={
            "example": {
                "source": "thekla",
                "source_id": "thekla-123",
                "title": "Black Midi",
                "artists": ["Black Midi"],
                "genre": ["rock"],
                "date_start": "2025-08-13T19:30:00+00:00",
                "venue": {"name": "Thekla", "city": "Bristol", "country": "UK"},
                "status": "scheduled",
            }
        },
    )

    # ---- IDENTITY ----
    id: str = ""
    source: str = Field(..., min_length=1)
    source_id: str | None = None

    # ---- DESCRIPTIVE ----
    title: str = Field(..., min_length=1)
    artists: list[str] = Field(default_factory=list)
    genre: list[str] = Field(default_factory=list, description="Free-form tags")
    description: str | None = None

    # ---- TIMING ----
    date_start: datetime
    date_end: datetime | None = None
    timezone: str | None = None

    # ---- LOCATION / COMMERCIAL ----
    venue: Venue
    price: PriceRange | None = None
    age_restriction: str | None = None
    status: EventStatus = EventStatus.SCHEDULED
    tickets_url: str | None = None
    event_url: str | None = None
    images: list[str] = Field(default_factory=list)

    # ---- CHANGE TRACKING ----
    hash: str = ""
    is_new: bool = False
    is_updated: bool = False
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("date_start", "date_end", "first_seen_at", "last_seen_at", "updated_at")
    @classmethod
    def assume_utc(cls, v):
        """Naive datetimes are treated as UTC so all records compare."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def fill_identity(self):
        if not self.id:
            self.id = stable_event_id(self)
        if not self.hash:
            self.hash = content_hash(self)
        return self

    def with_identity(self) -> "EventRecord":
        """Return a copy whose id and hash are recomputed from current content."""
        return self.model_copy(
            update={"id": stable_event_id(self), "hash": content_hash(self)}
        )


def stable_event_id(record: EventRecord) -> str:
    """Slug of (venue name, title, start, city), skipping empty parts."""
    parts = [
        record.venue.name,
        record.title,
        record.date_start.isoformat(),
        record.venue.city,
    ]
    return create_slug("-".join(p for p in parts if p))


def hash_payload(record: EventRecord) -> dict[str, Any]:
    data = record.model_dump(mode="json", include=set(HASHED_FIELDS))
    # absent optional fields hash the same as explicit nulls
    for name in HASHED_FIELDS:
        data.setdefault(name, None)
    return data


def content_hash(record: EventRecord) -> str:
    """SHA-256 over the sorted-key JSON of the hashed field subset."""
    canonical = json.dumps(hash_payload(record), sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
