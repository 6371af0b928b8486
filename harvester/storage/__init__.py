"""
harvester.storage

Local snapshots (prior state for change detection, raw data, run logs)
and persistence sinks for the long-term event store.
"""

from .sinks import EventSink, InMemoryEventSink, SqlEventSink, UpsertResult
from .snapshots import InMemorySnapshotStore, JsonSnapshotStore, SnapshotStore

__all__ = [
    "EventSink",
    "InMemoryEventSink",
    "InMemorySnapshotStore",
    "JsonSnapshotStore",
    "SnapshotStore",
    "SqlEventSink",
    "UpsertResult",
]
