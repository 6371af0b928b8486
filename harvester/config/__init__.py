"""
Configuration for the harvester.

This package provides:
- schema.py: declarative source documents (SourceConfig and workflow actions)
- loader.py: JSON/YAML loading with validation reports
- settings.py: environment driven HarvesterSettings
"""

from .loader import LoadOptions, LoadResult, load_source, load_sources
from .schema import (
    DEFAULT_SCHEDULE,
    DEFAULT_TRUST_SCORE,
    ClickAction,
    ExtractAction,
    FieldSpec,
    FollowUp,
    NavigateAction,
    ScrollAction,
    SourceConfig,
    WaitAction,
    export_json_schema,
)
from .settings import HarvesterSettings, get_settings

__all__ = [
    "DEFAULT_SCHEDULE",
    "DEFAULT_TRUST_SCORE",
    "ClickAction",
    "ExtractAction",
    "FieldSpec",
    "FollowUp",
    "HarvesterSettings",
    "LoadOptions",
    "LoadResult",
    "NavigateAction",
    "ScrollAction",
    "SourceConfig",
    "WaitAction",
    "export_json_schema",
    "get_settings",
    "load_source",
    "load_sources",
]
