"""
Persistence sinks: upsert-by-stable-id into the long-term event store.

Sink failures never abort an ingestion run. Each record is written in its
own transaction; a failing record is rolled back and logged while the
rest of the batch continues. The local snapshot keeps the data for the
next run either way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import JSON, DateTime, String, Text, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from harvester.errors import PersistenceError
from harvester.schemas.event import EventRecord

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/events.db"


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


@runtime_checkable
class EventSink(Protocol):
    def upsert(self, records: list[EventRecord]) -> UpsertResult: ...


class Base(DeclarativeBase):
    pass


class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    source: Mapped[str] = mapped_column(String(128), index=True)
    source_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    title: Mapped[str] = mapped_column(Text)
    venue_name: Mapped[str] = mapped_column(String(256))
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    date_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String(16))
    hash: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _row_values(record: EventRecord) -> dict[str, Any]:
    return {
        "source": record.source,
        "source_id": record.source_id,
        "title": record.title,
        "venue_name": record.venue.name,
        "city": record.venue.city,
        "date_start": record.date_start,
        "status": record.status,
        "hash": record.hash,
        "payload": record.model_dump(mode="json"),
        "first_seen_at": record.first_seen_at,
        "last_seen_at": record.last_seen_at,
        "updated_at": record.updated_at,
    }


class SqlEventSink:
    """
    SQLAlchemy-backed sink. Any database URL SQLAlchemy understands works;
    the table is created on first use.
    """

    def __init__(self, url: str | None = None, *, engine: Engine | None = None) -> None:
        try:
            self.engine = engine or create_engine(url or DEFAULT_DATABASE_URL)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not initialise event store: {e}") from e

    def upsert(self, records: list[EventRecord]) -> UpsertResult:
        result = UpsertResult()
        with Session(self.engine) as session:
            for record in records:
                try:
                    self._upsert_one(session, record, result)
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    result.failed += 1
                    result.errors.append(f"{record.id}: {e}")
                    logger.error("Failed to persist event '%s': %s", record.title, e)
        logger.info(
            "Upsert complete: %d inserted, %d updated, %d unchanged, %d failed",
            result.inserted, result.updated, result.unchanged, result.failed,
        )
        return result

    def _upsert_one(self, session: Session, record: EventRecord, result: UpsertResult) -> None:
        row = session.get(EventRow, record.id)
        values = _row_values(record)
        if row is None:
            session.add(EventRow(id=record.id, **values))
            result.inserted += 1
        elif row.hash != record.hash:
            for key, value in values.items():
                setattr(row, key, value)
            result.updated += 1
        else:
            row.last_seen_at = record.last_seen_at
            result.unchanged += 1

    def get(self, event_id: str) -> EventRecord | None:
        with Session(self.engine) as session:
            row = session.get(EventRow, event_id)
            return EventRecord.model_validate(row.payload) if row else None

    def count(self, source: str | None = None) -> int:
        stmt = select(func.count()).select_from(EventRow)
        if source:
            stmt = stmt.where(EventRow.source == source)
        with Session(self.engine) as session:
            return session.scalar(stmt) or 0

    def close(self) -> None:
        self.engine.dispose()


class InMemoryEventSink:
    """Dict-backed sink with the same upsert semantics."""

    def __init__(self) -> None:
        self.records: dict[str, EventRecord] = {}

    def upsert(self, records: list[EventRecord]) -> UpsertResult:
        result = UpsertResult()
        for record in records:
            existing = self.records.get(record.id)
            if existing is None:
                result.inserted += 1
            elif existing.hash != record.hash:
                result.updated += 1
            else:
                result.unchanged += 1
            self.records[record.id] = record
        return result

    def count(self, source: str | None = None) -> int:
        if source is None:
            return len(self.records)
        return sum(1 for r in self.records.values() if r.source == source)
