"""
harvester.config.loader

Load source documents from one file or a directory.
Supports:
- JSON or YAML files (.json / .yaml / .yml)
- file contains a single object     -> one SourceConfig
- file contains an array of objects -> many SourceConfig

Also supports:
- validation via pydantic models
- optional strict mode (warnings become errors)
- disabled sources are skipped unless explicitly included

Returns both the parsed SourceConfig objects and metadata (files loaded,
warnings, errors). Invalid documents never raise; they land in ``errors``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import yaml
from pydantic import ValidationError

from harvester.errors import ConfigError

from .schema import ExtractAction, NavigateAction, SourceConfig

JsonDict = dict[str, Any]

CONFIG_SUFFIXES = (".json", ".yaml", ".yml")


@dataclass(frozen=True)
class LoadOptions:
    only_source_contains: str | None = None
    max_sources: int | None = None
    include_disabled: bool = False
    strict: bool = False  # treat warnings as errors


@dataclass(frozen=True)
class LoadResult:
    sources: list[SourceConfig]
    meta: JsonDict
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_sources(
    *,
    config_path: str | Path | None = None,
    config_dir: str | Path | None = None,
    options: LoadOptions | None = None,
) -> LoadResult:
    """
    Load and validate SourceConfig(s).

    Raises only when the location itself is wrong (missing file, nothing
    given); document problems are reported through ``errors``.
    """
    options = options or LoadOptions()
    paths = _resolve_paths(config_path=config_path, config_dir=config_dir)

    warnings: list[str] = []
    errors: list[str] = []
    docs = _select(list(_documents(paths, errors)), options)

    sources: list[SourceConfig] = []
    seen: set[str] = set()
    for p, d in docs:
        key = _source_key(d)
        try:
            cfg = SourceConfig.model_validate(d)
        except ValidationError as ve:
            errors.append(f"{p.name}:{key}: {ve}")
            continue

        if cfg.name in seen:
            errors.append(f"{p.name}:{key}: duplicate source key")
            continue
        seen.add(cfg.name)

        warnings.extend(f"{cfg.name}: {w}" for w in _lint(cfg))
        sources.append(cfg)

    if options.strict and warnings:
        errors.extend([f"STRICT: {w}" for w in warnings])

    meta: JsonDict = {
        "files": [str(p) for p in paths],
        "matched_files": len(paths),
        "sources_loaded": len(sources),
    }

    return LoadResult(sources=sources, meta=meta, warnings=warnings, errors=errors)


def load_source(path: str | Path) -> SourceConfig:
    """Load exactly one source document, raising on any problem."""
    result = load_sources(config_path=path, options=LoadOptions(include_disabled=True))
    if result.errors:
        raise ConfigError("; ".join(result.errors))
    if len(result.sources) != 1:
        raise ConfigError(f"{path}: expected one source, found {len(result.sources)}")
    return result.sources[0]


def _documents(paths: list[Path], errors: list[str]) -> Iterator[tuple[Path, JsonDict]]:
    """Yield (file, object) pairs; a file may hold one object or a list."""
    for path in paths:
        try:
            data = _read_document(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            errors.append(f"{path}: unreadable config: {e}")
            continue

        if not isinstance(data, (dict, list)):
            errors.append(f"{path}: config must be an object or an array of objects")
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict):
                yield path, item
            else:
                errors.append(f"{path}: config array contains non-object item")


def _select(docs: list[tuple[Path, JsonDict]], options: LoadOptions) -> list[tuple[Path, JsonDict]]:
    if not options.include_disabled:
        docs = [(p, d) for p, d in docs if d.get("enabled", True)]
    if options.only_source_contains:
        needle = options.only_source_contains.lower()
        docs = [(p, d) for p, d in docs if needle in _source_key(d).lower()]
    if options.max_sources is not None:
        docs = docs[: options.max_sources]
    return docs


def _lint(cfg: SourceConfig) -> list[str]:
    out: list[str] = []
    if not isinstance(cfg.workflow[0], NavigateAction):
        out.append("workflow does not start with a navigate action")
    if cfg.rate_limit.max_requests_per_min > 60:
        out.append("rateLimit.maxRequestsPerMin above 60 is unusually aggressive")
    if not cfg.rate_limit.respect_robots_txt:
        out.append("rateLimit.respectRobotsTxt is disabled")

    extracted: set[str] = set()
    for action in cfg.workflow:
        if isinstance(action, ExtractAction):
            extracted.update(action.fields)
            if action.group_selector:
                extracted.add(action.group_field)
            if action.follow_up:
                extracted.update(action.follow_up.fields)
            for spec in action.fields.values():
                if spec.follow_up:
                    extracted.update(spec.follow_up.fields)
    if cfg.mapping.title not in extracted:
        out.append(f"mapping.title refers to '{cfg.mapping.title}' which no extract action produces")
    return out


def _source_key(d: JsonDict) -> str:
    site = d.get("site")
    if isinstance(site, dict):
        return str(site.get("source", "<no source>"))
    return "<no source>"


def _resolve_paths(
    *,
    config_path: str | Path | None,
    config_dir: str | Path | None,
) -> list[Path]:
    if config_path and config_dir:
        raise ValueError("Provide only one of config_path or config_dir")

    if config_path:
        p = Path(config_path).expanduser().resolve()
        if not p.exists():
            raise FileNotFoundError(f"Config not found: {p}")
        return [p]

    if config_dir:
        d = Path(config_dir).expanduser().resolve()
        if not d.is_dir():
            raise FileNotFoundError(f"Config directory not found: {d}")
        return sorted(p for p in d.iterdir() if p.is_file() and p.suffix.lower() in CONFIG_SUFFIXES)

    raise ValueError("You must provide config_path or config_dir")


def _read_document(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            return yaml.safe_load(f)
        return json.load(f)
