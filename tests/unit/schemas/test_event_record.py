"""
Unit tests for the event record schema.

Tests for EventRecord, Venue, PriceRange and the identity helpers.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from harvester.schemas.event import (
    EventRecord,
    EventStatus,
    PriceRange,
    Venue,
    content_hash,
    create_slug,
    stable_event_id,
)


class TestCreateSlug:
    """Tests for create_slug."""

    def test_punctuation_and_spaces(self):
        """Punctuation is dropped and separators collapse to single dashes."""
        assert create_slug("The Fleece & Firkin!") == "the-fleece-firkin"

    def test_empty(self):
        """Empty or None input yields an empty slug."""
        assert create_slug("") == ""
        assert create_slug(None) == ""


class TestVenue:
    """Tests for the Venue model."""

    def test_name_required(self):
        """An empty venue name is rejected."""
        with pytest.raises(ValidationError):
            Venue(name="")

    def test_coordinates_bounds(self):
        """Latitude and longitude must be in range."""
        with pytest.raises(ValidationError):
            Venue(name="Thekla", lat=91)
        with pytest.raises(ValidationError):
            Venue(name="Thekla", lng=-181)


class TestPriceRange:
    """Tests for the PriceRange model."""

    def test_max_below_min_rejected(self):
        """max < min is invalid."""
        with pytest.raises(ValidationError):
            PriceRange(min=20, max=10)

    def test_default_currency(self):
        """Currency defaults to GBP."""
        assert PriceRange(min=5).currency == "GBP"


class TestEventRecordIdentity:
    """Tests for the derived id and content hash."""

    def test_id_and_hash_filled(self, sample_record):
        """A record built without id or hash gets both."""
        assert sample_record.id == "thekla-black-midi-2025-08-13t1930000000-bristol"
        assert len(sample_record.hash) == 64

    def test_identity_deterministic(self, create_record):
        """The same semantic content always yields the same id and hash."""
        a = create_record()
        b = create_record()
        assert a.id == b.id
        assert a.hash == b.hash

    def test_id_ignores_non_identity_fields(self, create_record):
        """Price or tickets do not change the id but do change the hash."""
        a = create_record()
        b = create_record(tickets_url="https://tickets.example/1")
        assert a.id == b.id
        assert a.hash != b.hash

    def test_hash_ignores_tracking_fields(self, create_record):
        """Change tracking fields are not part of the hash."""
        a = create_record()
        b = create_record(
            is_new=True,
            first_seen_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            updated_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
        )
        assert a.hash == b.hash

    def test_hash_ignores_source(self, create_record):
        """Two sources reporting identical content produce the same hash."""
        assert create_record(source="a").hash == create_record(source="b").hash

    def test_explicit_id_kept(self, create_record):
        """A supplied id is not overwritten."""
        assert create_record(id="custom").id == "custom"

    def test_with_identity_recomputes(self, create_record):
        """with_identity recomputes id and hash from current content."""
        record = create_record(id="stale", hash="stale")
        fresh = record.with_identity()
        assert fresh.id == stable_event_id(record)
        assert fresh.hash == content_hash(record)

    def test_id_skips_missing_city(self, create_record):
        """A venue without a city leaves the city out of the id."""
        record = create_record(venue=Venue(name="Thekla"))
        assert record.id == "thekla-black-midi-2025-08-13t1930000000"


class TestEventRecordValidation:
    """Tests for field validation."""

    def test_naive_datetimes_become_utc(self, create_record):
        """Naive datetimes are read as UTC."""
        record = create_record(date_start=datetime(2025, 8, 13, 19, 30))
        assert record.date_start.tzinfo == timezone.utc

    def test_title_required(self, create_record):
        """An empty title is rejected."""
        with pytest.raises(ValidationError):
            create_record(title="")

    def test_status_values(self, create_record):
        """Status is stored as its string value."""
        record = create_record(status=EventStatus.CANCELLED)
        assert record.status == "cancelled"

    def test_json_round_trip(self, sample_record):
        """model_dump(mode='json') validates back into an equal record."""
        restored = EventRecord.model_validate(sample_record.model_dump(mode="json"))
        assert restored == sample_record
