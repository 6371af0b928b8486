"""
Plugin registry: one name -> SourcePlugin table for the engine.

The table is built from two inputs:

- native plugins (hand-written SourcePlugin instances, or zero-argument
  factories returning one)
- declarative source documents found in a config directory, each compiled
  into a DeclarativePlugin

On a name collision the declarative definition wins and the collision is
logged. The table is read-only between explicit ``load()`` / ``reload()``
calls, and reloading the same inputs reproduces the same table.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from harvester.config.loader import LoadOptions, load_sources
from harvester.config.schema import SourceConfig
from harvester.errors import PluginNotFoundError

from .base import SourcePlugin
from .declarative import DeclarativePlugin

logger = logging.getLogger(__name__)

NativeSpec = SourcePlugin | Callable[[], SourcePlugin]


class PluginRegistry:
    """
    Holds every loaded plugin, keyed by source name.

    Args:
        config_dir: Directory of JSON/YAML source documents (optional)
        native: Native plugins or factories (optional)
        load_options: Options forwarded to the config loader
        plugin_kwargs: Extra keyword arguments for each DeclarativePlugin
            (session factory, clock, artifacts dir)
    """

    def __init__(
        self,
        config_dir: str | Path | None = None,
        *,
        native: Iterable[NativeSpec] | None = None,
        configs: Iterable[SourceConfig] | None = None,
        load_options: LoadOptions | None = None,
        plugin_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.config_dir = Path(config_dir) if config_dir else None
        self._native = list(native or [])
        self._configs = list(configs or [])
        self._load_options = load_options or LoadOptions()
        self._plugin_kwargs = dict(plugin_kwargs or {})

        self._plugins: dict[str, SourcePlugin] = {}
        self._kinds: dict[str, str] = {}
        self.load_errors: list[str] = []
        self.load_warnings: list[str] = []
        self.collisions: list[str] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> PluginRegistry:
        """Build the table. Calling twice without reload() is a no-op."""
        if self._plugins:
            return self

        for spec in self._native:
            plugin = spec if isinstance(spec, SourcePlugin) else spec()
            if plugin.name in self._plugins:
                logger.warning("Duplicate native plugin '%s'; keeping the first", plugin.name)
                continue
            self._plugins[plugin.name] = plugin
            self._kinds[plugin.name] = "native"

        for cfg in self._declarative_configs():
            if cfg.name in self._plugins:
                logger.info(
                    "Declarative config '%s' overrides native plugin of the same name", cfg.name
                )
                self.collisions.append(cfg.name)
            self._plugins[cfg.name] = DeclarativePlugin(cfg, **self._plugin_kwargs)
            self._kinds[cfg.name] = "declarative"

        for err in self.load_errors:
            logger.error("Config error: %s", err)
        for warning in self.load_warnings:
            logger.warning("Config warning: %s", warning)

        logger.info(
            "Loaded %d plugin(s): %s", len(self._plugins), self.breakdown()
        )
        return self

    def reload(self) -> PluginRegistry:
        """Drop the table and build it again from the same inputs."""
        self._plugins.clear()
        self._kinds.clear()
        self.load_errors = []
        self.load_warnings = []
        self.collisions = []
        return self.load()

    def _declarative_configs(self) -> list[SourceConfig]:
        configs = list(self._configs)
        if self.config_dir is None:
            return configs
        if not self.config_dir.is_dir():
            self.load_errors.append(f"config directory not found: {self.config_dir}")
            return configs

        result = load_sources(config_dir=self.config_dir, options=self._load_options)
        self.load_errors.extend(result.errors)
        self.load_warnings.extend(result.warnings)
        seen = {c.name for c in configs}
        configs.extend(c for c in result.sources if c.name not in seen)
        return configs

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    def get(self, name: str) -> SourcePlugin:
        try:
            return self._plugins[name]
        except KeyError:
            raise PluginNotFoundError(name) from None

    def names(self) -> list[str]:
        return sorted(self._plugins)

    def all(self) -> list[SourcePlugin]:
        return [self._plugins[n] for n in self.names()]

    def kind(self, name: str) -> str:
        return self._kinds[name]

    def breakdown(self) -> dict[str, int]:
        """Count of plugins per kind ({"declarative": 3, "native": 1})."""
        out: dict[str, int] = {"declarative": 0, "native": 0}
        for kind in self._kinds.values():
            out[kind] += 1
        return out

    def __contains__(self, name: str) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)
