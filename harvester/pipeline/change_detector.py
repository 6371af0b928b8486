"""
Change detection between a run's records and the previous snapshot.

Records are matched by stable id and compared by content hash:

    absent from previous  -> new        (first_seen_at = now)
    hash differs          -> updated    (first_seen_at preserved)
    hash equal            -> unchanged  (first_seen_at preserved)

Every record leaves with last_seen_at = now. The detector holds no state:
given the same ``now`` the result is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from harvester.schemas.event import EventRecord, content_hash, stable_event_id


@dataclass(frozen=True)
class ChangeSet:
    new: list[EventRecord] = field(default_factory=list)
    updated: list[EventRecord] = field(default_factory=list)
    unchanged: list[EventRecord] = field(default_factory=list)
    # ids present in the previous snapshot but not in this run
    missing_ids: list[str] = field(default_factory=list)

    def merged(self) -> list[EventRecord]:
        return [*self.new, *self.updated, *self.unchanged]

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.updated)

    def counts(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "missing": len(self.missing_ids),
        }


def _ensure_identity(record: EventRecord) -> EventRecord:
    if record.id and record.hash:
        return record
    return record.model_copy(
        update={"id": record.id or stable_event_id(record), "hash": record.hash or content_hash(record)}
    )


class ChangeDetector:
    """Classify records against a previous snapshot of the same source."""

    def detect(
        self,
        current: list[EventRecord],
        previous: list[EventRecord] | None,
        now: datetime | None = None,
    ) -> ChangeSet:
        now = now or datetime.now(timezone.utc)
        prior = {r.id: r for r in map(_ensure_identity, previous or [])}

        new: list[EventRecord] = []
        updated: list[EventRecord] = []
        unchanged: list[EventRecord] = []
        seen: set[str] = set()

        for record in map(_ensure_identity, current):
            if record.id in seen:
                # same event listed twice in one run; keep the first
                continue
            seen.add(record.id)

            old = prior.get(record.id)
            if old is None:
                new.append(
                    record.model_copy(
                        update={
                            "is_new": True,
                            "is_updated": False,
                            "first_seen_at": now,
                            "last_seen_at": now,
                            "updated_at": now,
                        }
                    )
                )
            elif old.hash != record.hash:
                updated.append(
                    record.model_copy(
                        update={
                            "is_new": False,
                            "is_updated": True,
                            "first_seen_at": old.first_seen_at or now,
                            "last_seen_at": now,
                            "updated_at": now,
                        }
                    )
                )
            else:
                unchanged.append(
                    record.model_copy(
                        update={
                            "is_new": False,
                            "is_updated": False,
                            "first_seen_at": old.first_seen_at or now,
                            "last_seen_at": now,
                            "updated_at": old.updated_at,
                        }
                    )
                )

        missing = sorted(set(prior) - seen)
        return ChangeSet(new=new, updated=updated, unchanged=unchanged, missing_ids=missing)
