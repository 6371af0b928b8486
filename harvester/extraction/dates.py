"""
harvester.extraction.dates

Date and time parsing for listing pages.

Venue sites rarely publish machine readable dates. These helpers understand
the shapes seen in the wild:

- relative words: "Today", "Tomorrow", "Tonight"
- "Friday 15th August 22:30 - 03:00" / "Friday 15th August"
- "Tuesday 12 Aug 2025" (optionally with a separate doors time)
- "Wed.13.Aug.25"
- 24h ("19:30") and 12h ("7:30pm", "Doors: 07:00 pm") times
- ISO 8601 and a few numeric formats as a fallback

Every function takes ``now`` explicitly so results are reproducible; dates
without a year are placed in the next twelve months relative to ``now``.
All returned datetimes are naive wall-clock values.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta

DEFAULT_EVENT_HOUR = 19
MAX_MONTHS_AHEAD = 18

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_WS = re.compile(r"\s+")
_TIME_12H = re.compile(r"(?:doors?:?\s*)?(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?m\.?", re.I)
_TIME_24H = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_TIME_RANGE = re.compile(r"(\d{1,2}):(\d{2})\s*[-–]\s*(\d{1,2}):(\d{2})")

_WEEKDAY_DAY_MONTH_TIME = re.compile(
    r"^(?:\w+day)\s+(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)\s+(\d{1,2}):(\d{2})(?:\s*[-–]\s*\d{1,2}:\d{2})?$",
    re.I,
)
_DAY_MONTH = re.compile(r"^(?:(?:\w+day),?\s+)?(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)$", re.I)
_DAY_MONTH_YEAR = re.compile(r"^(?:[a-z]+,?\s+)?(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)\s+(\d{4})$", re.I)
_DOTTED = re.compile(r"^[a-z]{3}\.(\d{1,2})\.([a-z]{3})\.(\d{2})$", re.I)
_RELATIVE = re.compile(r"^(today|tonight|tomorrow)\b(.*)$", re.I)

_FALLBACK_FORMATS = ("%Y-%m-%d %H:%M", "%d/%m/%Y %H:%M", "%d/%m/%Y", "%Y/%m/%d", "%d-%m-%Y")


def clean(text: str | None) -> str:
    return _WS.sub(" ", (text or "").strip())


def month_number(name: str) -> int | None:
    """'August' / 'aug' / 'Sept' -> 8 / 8 / 9"""
    return MONTHS.get((name or "").strip().lower()[:3])


def to_24h(hours: int, minutes: int, period: str) -> tuple[int, int] | None:
    p = period.lower()[0]
    if not 1 <= hours <= 12 or not 0 <= minutes <= 59:
        return None
    if p == "p" and hours != 12:
        hours += 12
    elif p == "a" and hours == 12:
        hours = 0
    return hours, minutes


def parse_time(text: str | None) -> tuple[int, int] | None:
    """
    Parse the first time of day found in ``text``.

    >>> parse_time("Doors: 07:00 pm")
    (19, 0)
    >>> parse_time("13:00 - 14:45")
    (13, 0)
    """
    s = clean(text)
    if not s:
        return None

    m = _TIME_12H.search(s)
    if m:
        return to_24h(int(m.group(1)), int(m.group(2) or 0), m.group(3))

    m = _TIME_24H.search(s)
    if m:
        h, mi = int(m.group(1)), int(m.group(2))
        if 0 <= h <= 23 and 0 <= mi <= 59:
            return h, mi
    return None


def parse_time_range(text: str | None) -> tuple[tuple[int, int], tuple[int, int]] | None:
    m = _TIME_RANGE.search(clean(text))
    if not m:
        return None
    sh, sm, eh, em = (int(g) for g in m.groups())
    if not (0 <= sh <= 23 and 0 <= eh <= 23 and 0 <= sm <= 59 and 0 <= em <= 59):
        return None
    return (sh, sm), (eh, em)


def _add_months(d: datetime, months: int) -> datetime:
    y, m = divmod(d.month - 1 + months, 12)
    year, month = d.year + y, m + 1
    # clamp to the last valid day of the target month
    for day in (d.day, 30, 29, 28):
        try:
            return d.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return d


def infer_year(month: int, day: int, now: datetime, hour: int = 12, minute: int = 0) -> datetime | None:
    """
    Build a datetime for a month/day that carries no year.

    A month/day already behind ``now`` rolls into next year; anything that
    would land more than 18 months ahead stays in the current year.
    """
    now = now.replace(tzinfo=None)
    year = now.year
    if (month, day) < (now.month, now.day):
        year += 1
    try:
        candidate = datetime(year, month, day, hour, minute)
    except ValueError:
        return None
    if candidate > _add_months(now, MAX_MONTHS_AHEAD):
        try:
            candidate = candidate.replace(year=now.year)
        except ValueError:
            return None
    return candidate


def parse_relative(text: str | None, now: datetime) -> date | None:
    s = clean(text).lower()
    if s in ("today", "tonight"):
        return now.date()
    if s == "tomorrow":
        return now.date() + timedelta(days=1)
    return None


def parse_dotted_date(text: str | None) -> datetime | None:
    """'Wed.13.Aug.25' -> 2025-08-13 12:00"""
    m = _DOTTED.match(clean(text))
    if not m:
        return None
    month = month_number(m.group(2))
    if month is None:
        return None
    yy = int(m.group(3))
    year = 2000 + yy if yy < 50 else 1900 + yy
    try:
        return datetime(year, month, int(m.group(1)), 12, 0)
    except ValueError:
        return None


def parse_day_month_year(text: str | None, time_text: str | None = None) -> datetime | None:
    """'Tuesday 12 Aug 2025' with an optional separate time ('Doors 7pm')."""
    m = _DAY_MONTH_YEAR.match(clean(text))
    if not m:
        return None
    month = month_number(m.group(2))
    if month is None:
        return None
    hour, minute = parse_time(time_text) or (12, 0)
    try:
        return datetime(int(m.group(3)), month, int(m.group(1)), hour, minute)
    except ValueError:
        return None


def parse_date(
    text: str | None,
    time_text: str | None = None,
    *,
    now: datetime,
    default_hour: int = DEFAULT_EVENT_HOUR,
) -> datetime | None:
    """
    Generic listing date parser. Returns None when nothing matches.

    ``time_text`` (when given and parseable) overrides the time of day.
    """
    s = clean(text)
    if not s:
        return None
    base_now = now.replace(tzinfo=None)
    explicit_time = parse_time(time_text) if time_text else None

    # "Today", "Tomorrow 19:00 - 22:00"
    m = _RELATIVE.match(s)
    if m:
        day = parse_relative(m.group(1), base_now)
        hm = explicit_time or parse_time(m.group(2)) or (default_hour, 0)
        return datetime(day.year, day.month, day.day, hm[0], hm[1])

    m = _WEEKDAY_DAY_MONTH_TIME.match(s)
    if m:
        month = month_number(m.group(2))
        if month is not None:
            hm = explicit_time or (int(m.group(3)), int(m.group(4)))
            return infer_year(month, int(m.group(1)), base_now, *hm)

    m = _DAY_MONTH.match(s)
    if m:
        month = month_number(m.group(2))
        if month is not None:
            hm = explicit_time or (default_hour, 0)
            return infer_year(month, int(m.group(1)), base_now, *hm)

    dt = parse_day_month_year(s, time_text) or parse_dotted_date(s)
    if dt is not None:
        return dt

    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        dt = None
        for fmt in _FALLBACK_FORMATS:
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if explicit_time:
        dt = dt.replace(hour=explicit_time[0], minute=explicit_time[1], second=0, microsecond=0)
    return dt


def parse_date_group(text: str | None, now: datetime) -> date | None:
    """
    Parse a listing's date heading: 'Today', 'Monday 11th August', '10 January'.
    Returns None for headings that are not dates ('Valentines day').
    """
    s = clean(text)
    rel = parse_relative(s, now)
    if rel is not None:
        return rel
    m = _DAY_MONTH.match(s)
    if not m:
        return None
    month = month_number(m.group(2))
    if month is None:
        return None
    dt = infer_year(month, int(m.group(1)), now)
    return dt.date() if dt else None


def combine_group_and_range(
    date_group: str | None,
    time_range: str | None,
    *,
    now: datetime,
    end: bool = False,
) -> datetime | None:
    """
    Combine a date heading with an 'HH:MM - HH:MM' range.

    With ``end=True`` the end of the range is returned, rolled over to the
    next day when it is earlier than the start (late-night shows).
    """
    if date_group:
        day = parse_date_group(date_group, now)
        if day is None:
            return None
    else:
        day = now.date()

    rng = parse_time_range(time_range)
    if rng is None:
        single = parse_time(time_range)
        if single is None or end:
            return None
        return datetime(day.year, day.month, day.day, *single)

    (sh, sm), (eh, em) = rng
    if not end:
        return datetime(day.year, day.month, day.day, sh, sm)
    out = datetime(day.year, day.month, day.day, eh, em)
    if (eh, em) < (sh, sm):
        out += timedelta(days=1)
    return out
