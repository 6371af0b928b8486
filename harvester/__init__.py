"""
harvester: event-listing ingestion engine.

Harvests gig listings from declarative (browser-driven) and native
sources, normalizes them into EventRecords, tracks changes between runs,
reconciles duplicates across sources by trust and runs everything on a
per-source schedule.
"""

__version__ = "0.1.0"
