"""
harvester.extraction.transforms

Named value transforms applied to extracted fields.

Every transform is a pure function ``fn(value, params, ctx) -> str | None``.
``ctx`` carries the only context a transform may depend on: the source's
base url and the run wall-clock (for "Today"/"Tomorrow"). A transform
returning None means "no usable value"; the interpreter then falls back.

Dates are emitted as ISO 8601 strings so raw records stay JSON-serializable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urljoin

from harvester.schemas.event import create_slug

from . import dates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformContext:
    base_url: str = ""
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TransformFn = Callable[[str, dict[str, Any], TransformContext], "str | None"]

_REGEX_FLAGS = {"i": re.I, "m": re.M, "s": re.S, "x": re.X}


def _flags(spec: str | None) -> int:
    out = 0
    for ch in spec or "":
        out |= _REGEX_FLAGS.get(ch.lower(), 0)
    return out


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


# ---------------------------------------------------------------------
# Text transforms
# ---------------------------------------------------------------------

def trim(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return dates.clean(value)


def lowercase(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return value.lower()


def uppercase(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return value.upper()


def slug(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return create_slug(value) or None


def absolute_url(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    """Resolve a relative link against ``params['baseUrl']`` or the site's base url."""
    value = (value or "").strip()
    if not value:
        return None
    base = params.get("baseUrl") or ctx.base_url
    return urljoin(base, value) if base else value


def extract_text(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    """
    Return the first capture group of ``params['pattern']`` (or the whole
    match when the pattern has no groups). None when nothing matches.
    """
    pattern = params.get("pattern")
    if not pattern:
        return value
    m = re.search(pattern, value, _flags(params.get("flags")))
    if not m:
        return None
    return (m.group(1) if m.groups() else m.group(0)).strip()


def regex_replace(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    pattern = params.get("pattern")
    if not pattern:
        return value
    return re.sub(pattern, params.get("replacement", ""), value, flags=_flags(params.get("flags")))


# ---------------------------------------------------------------------
# Date / time transforms
# ---------------------------------------------------------------------

def date(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return _iso(
        dates.parse_date(
            value,
            params.get("time"),
            now=ctx.now,
            default_hour=int(params.get("defaultHour", dates.DEFAULT_EVENT_HOUR)),
        )
    )


def time_range_start(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    m = re.match(r"^\s*(\d{1,2}:\d{2})", value)
    return m.group(1) if m else None


def time_range_end(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    m = re.search(r"(\d{1,2}:\d{2})\s*$", value)
    return m.group(1) if m else None


def parse_date_group(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    day = dates.parse_date_group(value, ctx.now)
    if day is None:
        logger.warning("Unable to parse date group %r", value)
        return None
    return day.isoformat()


def date_group_datetime(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    """Time range ('20:00 - 02:00') + params['dateGroup'] -> ISO start (or end)."""
    return _iso(
        dates.combine_group_and_range(
            params.get("dateGroup"),
            value,
            now=ctx.now,
            end=bool(params.get("isEndTime", False)),
        )
    )


def dotted_date(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    return _iso(dates.parse_dotted_date(value))


def day_month_year_datetime(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    """'Tuesday 12 Aug 2025' combined with an optional params['time'] doors time."""
    return _iso(dates.parse_day_month_year(value, params.get("time")))


def weekday_day_month_datetime(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    """'Friday 15th August 22:30 - 03:00', 'Tomorrow 19:00 - 22:00' and friends."""
    return _iso(dates.parse_date(value, params.get("time"), now=ctx.now))


def time_24h(value: str, params: dict[str, Any], ctx: TransformContext) -> str | None:
    hm = dates.parse_time(value)
    return f"{hm[0]:02d}:{hm[1]:02d}" if hm else None


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class TransformRegistry:
    """
    Name -> transform table.

    The default table is fixed at construction; ``register`` exists for
    native plugins and tests that need an extra transform.
    """

    def __init__(self, transforms: dict[str, TransformFn] | None = None) -> None:
        self._transforms: dict[str, TransformFn] = dict(transforms or {})

    def register(self, name: str, fn: TransformFn) -> None:
        self._transforms[name] = fn

    def names(self) -> list[str]:
        return sorted(self._transforms)

    def __contains__(self, name: str) -> bool:
        return name in self._transforms

    def apply(
        self,
        name: str | None,
        value: Any,
        params: dict[str, Any] | None = None,
        ctx: TransformContext | None = None,
    ) -> Any:
        """
        Apply transform ``name`` to a string or a list of strings.

        Lists are transformed element-wise and None results dropped. Unknown
        names leave the value untouched (logged once per call).
        """
        if not name or value is None:
            return value
        fn = self._transforms.get(name)
        if fn is None:
            logger.warning("Unknown transform '%s'; value left unchanged", name)
            return value

        params = params or {}
        ctx = ctx or TransformContext()
        if isinstance(value, list):
            out = [fn(str(v), params, ctx) for v in value]
            return [v for v in out if v is not None]
        return fn(str(value), params, ctx)


DEFAULT_TRANSFORMS: dict[str, TransformFn] = {
    "trim": trim,
    "lowercase": lowercase,
    "uppercase": uppercase,
    "slug": slug,
    "url": absolute_url,
    "extract-text": extract_text,
    "regex": regex_replace,
    "date": date,
    "time-range-start": time_range_start,
    "time-range-end": time_range_end,
    "time-24h": time_24h,
    "parse-date-group": parse_date_group,
    "date-group-datetime": date_group_datetime,
    "dotted-date": dotted_date,
    "day-month-year-datetime": day_month_year_datetime,
    "weekday-day-month-datetime": weekday_day_month_datetime,
}


def default_registry() -> TransformRegistry:
    return TransformRegistry(DEFAULT_TRANSFORMS)
