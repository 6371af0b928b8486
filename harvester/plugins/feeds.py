"""
Native plugin for RSS 2.0 / Atom event feeds.

Aggregators such as Bandsintown publish one item per show:

    <item>
      <title>Artist A + Artist B @ The Venue</title>
      <link>https://example.com/e/1</link>
      <pubDate>Fri, 15 Aug 2025 19:30:00 +0000</pubDate>
      <location>The Venue, Bristol, United Kingdom</location>
      <category>indie</category>
      <description>Tickets $15-20</description>
    </item>

Titles of the form "<title> @ <venue>" carry the venue; otherwise the first
part of <location> is used.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from bs4 import BeautifulSoup

from harvester.pipeline.validators import build_record
from harvester.schemas.event import EventRecord

from .base import PluginMeta, SourcePlugin

_AT_VENUE = re.compile(r"^(.+?)\s@\s(.+)$")
_FEATURING = re.compile(r"\s+(?:featuring|feat\.?|ft\.)\s+", re.I)
_PRICE = re.compile(r"([$£€])(\d+(?:\.\d{1,2})?)(?:\s*-\s*[$£€]?(\d+(?:\.\d{1,2})?))?")
_CURRENCIES = {"$": "USD", "£": "GBP", "€": "EUR"}


def _text(node: Any) -> str | None:
    if node is None:
        return None
    s = node.get_text(" ", strip=True)
    return s or None


def _feed_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_feed(xml: str) -> list[dict[str, Any]]:
    """Parse RSS <item> or Atom <entry> elements into raw dicts."""
    soup = BeautifulSoup(xml, "xml")
    items: list[dict[str, Any]] = []
    for node in soup.find_all(["item", "entry"]):
        link_node = node.find("link")
        link = None
        if link_node is not None:
            link = link_node.get("href") or _text(link_node)

        start = (
            _text(node.find("startDate"))
            or _text(node.find("dtstart"))
            or _text(node.find("pubDate"))
            or _text(node.find("published"))
        )
        items.append(
            {
                "title": _text(node.find("title")),
                "link": link,
                "dateStart": _feed_date(start),
                "dateEnd": _feed_date(_text(node.find("endDate")) or _text(node.find("dtend"))),
                "location": _text(node.find("location")),
                "categories": [t for t in (_text(c) or c.get("term") for c in node.find_all("category")) if t],
                "description": _text(node.find("description")) or _text(node.find("summary")),
                "guid": _text(node.find("guid")) or _text(node.find("id")),
            }
        )
    return items


def split_artists(title: str) -> list[str]:
    """'A featuring B' / 'A + B' / 'A & B' -> ['A', 'B']"""
    if _FEATURING.search(title):
        parts = _FEATURING.split(title)
    elif " + " in title:
        parts = title.split(" + ")
    elif " & " in title:
        parts = [p for part in title.split(" & ") for p in part.split(" with ")]
    else:
        parts = [title]
    return [p.strip() for p in parts if p.strip()]


def split_location(location: str | None) -> dict[str, str | None]:
    """
    'Blue Note, 131 W 3rd St, New York, NY 10012, United States'
    'Warehouse District, Amsterdam, Netherlands'
    'The Fleece, Bristol'
    """
    out: dict[str, str | None] = {"name": None, "address": None, "city": None, "country": None}
    if not location:
        return out
    parts = [p.strip() for p in location.split(",") if p.strip()]
    out["name"] = parts[0] if parts else None
    if len(parts) >= 5:
        out["city"] = parts[2]
        out["country"] = parts[-1]
        out["address"] = ", ".join(parts[:-1])
    elif len(parts) >= 3:
        out["city"] = parts[1]
        out["country"] = parts[-1]
        out["address"] = location
    elif len(parts) == 2:
        out["city"] = parts[1]
    return out


def price_from_description(description: str | None) -> dict[str, Any] | None:
    if not description:
        return None
    m = _PRICE.search(description)
    if m:
        lo = float(m.group(2))
        hi = float(m.group(3)) if m.group(3) else lo
        return {"min": lo, "max": hi, "currency": _CURRENCIES[m.group(1)]}
    lowered = description.lower()
    if "free" in lowered or "no cover charge" in lowered:
        return {"min": 0.0, "max": 0.0, "currency": "GBP"}
    return None


class RssFeedPlugin(SourcePlugin):
    """Event feed fetched over HTTP and parsed with BeautifulSoup."""

    def __init__(
        self,
        name: str,
        feed_url: str,
        *,
        rate_limit_per_min: int = 30,
        default_schedule: str = "0 */6 * * *",
        trust_score: int = 70,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.meta = PluginMeta(
            name=name,
            rate_limit_per_min=rate_limit_per_min,
            default_schedule=default_schedule,
            trust_score=trust_score,
            website=feed_url,
        )
        self.feed_url = feed_url
        self.timeout_s = timeout_s
        self._transport = transport

    async def fetch_raw(self) -> list[dict[str, Any]]:
        headers = {"User-Agent": "gig-harvester/0.1 (+feed reader)", "Accept": "application/rss+xml, application/xml"}
        async with httpx.AsyncClient(
            headers=headers,
            timeout=self.timeout_s,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            response = await client.get(self.feed_url)
            response.raise_for_status()
            items = parse_feed(response.text)
        self.logger.info("Feed returned %d item(s)", len(items))
        return items

    def normalize(self, raw: list[dict[str, Any]]) -> list[EventRecord]:
        out: list[EventRecord] = []
        for item in raw:
            if not item or not item.get("title") or not item.get("dateStart"):
                continue

            title = item["title"]
            loc = split_location(item.get("location"))
            venue_name = loc["name"]
            m = _AT_VENUE.match(title)
            if m:
                title, venue_name = m.group(1).strip(), m.group(2).strip()
            title = title.rstrip(":!").strip()

            record, result = build_record(
                {
                    "source": self.name,
                    "source_id": item.get("guid") or item.get("link"),
                    "title": title,
                    "artists": split_artists(title),
                    "genre": item.get("categories") or [],
                    "description": item.get("description"),
                    "date_start": item["dateStart"],
                    "date_end": item.get("dateEnd"),
                    "timezone": "UTC",
                    "venue": {
                        "name": venue_name,
                        "address": loc["address"],
                        "city": loc["city"],
                        "country": loc["country"],
                    },
                    "price": price_from_description(item.get("description")),
                    "event_url": item.get("link"),
                }
            )
            if record is None:
                self.logger.warning(
                    "Skipping feed item %r: %s", item.get("title"), "; ".join(i.message for i in result.errors())
                )
                continue
            out.append(record)
        return out
