"""
Source plugins.

This package provides:
- SourcePlugin / PluginMeta: the contract every source implements
- DeclarativePlugin: a plugin compiled from a SourceConfig document
- RssFeedPlugin: native plugin for RSS/Atom event feeds
- PluginRegistry: the name -> plugin table used by the engine
"""

from .base import PluginMeta, SourcePlugin
from .declarative import DeclarativePlugin, playwright_session
from .feeds import RssFeedPlugin
from .registry import PluginRegistry

__all__ = [
    "DeclarativePlugin",
    "PluginMeta",
    "PluginRegistry",
    "RssFeedPlugin",
    "SourcePlugin",
    "playwright_session",
]
