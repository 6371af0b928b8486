"""
Shared pytest fixtures for the harvester test suite.

Provides:
- factory fixtures for EventRecord objects and source documents
- a BeautifulSoup-backed stand-in for a Playwright page
- static plugins and an in-memory HarvestContext
- a controllable UTC clock
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from bs4 import BeautifulSoup

from harvester.config.settings import HarvesterSettings
from harvester.pipeline.ingestion import HarvestContext
from harvester.pipeline.trust import TrustTable
from harvester.pipeline.validators import build_record
from harvester.plugins.base import PluginMeta, SourcePlugin
from harvester.plugins.registry import PluginRegistry
from harvester.runtime.rate_limiter import RateLimiter
from harvester.schemas.event import EventRecord, Venue
from harvester.storage.snapshots import InMemorySnapshotStore

FIXED_NOW = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# HTML FIXTURES
# =============================================================================

LISTING_HTML = """
<html><body>
  <div class="listing">
    <div class="evt">
      <h3 class="title">Black Midi</h3>
      <span class="date">Friday 15 August 2025</span>
      <a href="/events/black-midi">More</a>
    </div>
    <div class="evt">
      <span class="date">Saturday 16 August 2025</span>
    </div>
    <div class="evt">
      <h3 class="title">  Squid  </h3>
      <span class="date">Sunday 17 August 2025</span>
      <a href="/events/squid">More</a>
    </div>
  </div>
</body></html>
"""

GROUPED_HTML = """
<html><body>
  <h2 class="day">Friday 15th August</h2>
  <div class="evt"><span class="title">Night One</span><span class="time">22:00 - 03:00</span></div>
  <div class="evt"><span class="title">Night Two</span><span class="time">23:00 - 04:00</span></div>
  <h2 class="day">Saturday 16th August</h2>
  <div class="evt"><span class="title">Night Three</span><span class="time">21:00 - 02:00</span></div>
</body></html>
"""


# =============================================================================
# FAKE BROWSER
# =============================================================================


class FakeElement:
    """Element handle backed by a BeautifulSoup tag."""

    def __init__(self, tag):
        self.tag = tag

    async def query_selector(self, selector: str):
        found = self.tag.select_one(selector)
        return FakeElement(found) if found is not None else None

    async def query_selector_all(self, selector: str):
        return [FakeElement(t) for t in self.tag.select(selector)]

    async def inner_text(self) -> str:
        return self.tag.get_text(" ", strip=True)

    async def text_content(self) -> str:
        return self.tag.get_text()

    async def inner_html(self) -> str:
        return self.tag.decode_contents()

    async def get_attribute(self, name: str) -> Optional[str]:
        value = self.tag.get(name)
        if isinstance(value, list):
            return " ".join(value)
        return value

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        # the only element script in use is `el.matches(selector)`
        return self.tag.css.match(arg)


class FakePage(FakeElement):
    """
    Page stand-in serving HTML from a url -> html dict.

    Navigation to an unknown url raises, like a failed page.goto.
    """

    def __init__(self, pages: dict[str, str]):
        self.pages = pages
        self.url: Optional[str] = None
        self.visited: list[str] = []
        self.clicked: list[str] = []
        self.scrolls: list[Any] = []
        self.closed = False
        super().__init__(BeautifulSoup("", "lxml"))

    async def goto(self, url: str, timeout: Optional[int] = None):
        if url not in self.pages:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url
        self.visited.append(url)
        self.tag = BeautifulSoup(self.pages[url], "lxml")

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[int] = None):
        return None

    async def wait_for_selector(self, selector: str, state: str = "visible", timeout: Optional[int] = None):
        found = self.tag.select_one(selector)
        if state == "hidden":
            if found is not None:
                raise TimeoutError(f"{selector} still attached")
            return None
        if found is None:
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return FakeElement(found)

    async def click(self, selector: str, timeout: Optional[int] = None):
        if self.tag.select_one(selector) is None:
            raise TimeoutError(f"No element matches {selector}")
        self.clicked.append(selector)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.scrolls.append(arg)
        return None

    async def screenshot(self, path: str, full_page: bool = False):
        with open(path, "wb") as f:
            f.write(b"png")

    async def content(self) -> str:
        return str(self.tag)


class FakeBrowser:
    """Session factory handing out FakePages over a fixed set of urls."""

    def __init__(self, pages: dict[str, str]):
        self.pages = pages
        self.opened: list[FakePage] = []

    @asynccontextmanager
    async def session(self, config):
        page = FakePage(self.pages)
        self.opened.append(page)
        try:
            yield page
        finally:
            page.closed = True


# =============================================================================
# STATIC PLUGINS
# =============================================================================


class StaticPlugin(SourcePlugin):
    """Plugin returning fixed raw items, or raising on fetch."""

    def __init__(
        self,
        name: str,
        raw: Optional[list[dict[str, Any]]] = None,
        *,
        error: Optional[Exception] = None,
        trust_score: int = 80,
        default_schedule: str = "0 */3 * * *",
        rate_limit_per_min: int = 10,
    ):
        self.meta = PluginMeta(
            name=name,
            rate_limit_per_min=rate_limit_per_min,
            default_schedule=default_schedule,
            trust_score=trust_score,
        )
        self.raw = list(raw or [])
        self.error = error
        self.fetch_calls = 0
        self.cleaned_up = 0

    async def fetch_raw(self) -> list[dict[str, Any]]:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return [dict(item) for item in self.raw]

    def normalize(self, raw: list[dict[str, Any]]) -> list[EventRecord]:
        out = []
        for item in raw:
            record, _ = build_record({"source": self.name, **item})
            if record is not None:
                out.append(record)
        return out

    async def cleanup(self) -> None:
        self.cleaned_up += 1


class FakeClock:
    """Mutable UTC clock: call it for the time, advance() to move it."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def create_record():
    """
    Return a function that creates EventRecord objects with sensible defaults.

    All defaults can be overridden via keyword arguments.

    Example:
        record = create_record(title="Squid", source="songkick")
    """

    def _create_record(
        title: str = "Black Midi",
        venue_name: str = "Thekla",
        date_start: Optional[datetime] = None,
        **kwargs,
    ) -> EventRecord:
        if date_start is None:
            date_start = datetime(2025, 8, 13, 19, 30, tzinfo=timezone.utc)

        defaults = {
            "source": "thekla",
            "title": title,
            "artists": [title],
            "date_start": date_start,
            "venue": Venue(name=venue_name, city="Bristol", country="UK"),
            "updated_at": FIXED_NOW,
        }

        # Merge defaults with provided kwargs
        defaults.update(kwargs)

        return EventRecord(**defaults)

    return _create_record


@pytest.fixture
def sample_record(create_record):
    """Return a single default record."""
    return create_record()


@pytest.fixture
def raw_item():
    """
    Return a function building raw items as a StaticPlugin would fetch them.
    """

    def _raw_item(title: str = "Black Midi", day: int = 13, **kwargs) -> dict[str, Any]:
        item = {
            "title": title,
            "date_start": f"2025-08-{day:02d}T19:30:00+00:00",
            "venue": {"name": "Thekla", "city": "Bristol"},
        }
        item.update(kwargs)
        return item

    return _raw_item


@pytest.fixture
def source_document():
    """
    Return a function producing a camelCase source document dict.

    The default document scrapes LISTING_HTML at https://venue.example/whats-on.
    """

    def _source_document(source: str = "test-venue", **overrides) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "site": {"name": "Test Venue", "baseUrl": "https://venue.example", "source": source},
            "schedule": "0 */6 * * *",
            "trustScore": 90,
            "rateLimit": {"maxRequestsPerMin": 5},
            "workflow": [
                {"type": "navigate", "url": "/whats-on"},
                {"type": "wait", "selector": ".evt", "timeout": 1000},
                {
                    "type": "extract",
                    "containerSelector": ".evt",
                    "fields": {
                        "title": {"selector": ".title"},
                        "date": {
                            "selector": ".date",
                            "transform": "date",
                            "transformParams": {"time": "19:30"},
                        },
                        "link": {
                            "selector": "a",
                            "attribute": "href",
                            "required": False,
                            "transform": "url",
                        },
                    },
                },
            ],
            "mapping": {
                "title": "title",
                "venue": {"name": "Test Venue", "city": "Bristol", "country": "UK"},
                "date": {"start": "date"},
                "urls": {"event": "link"},
            },
        }
        doc.update(overrides)
        return doc

    return _source_document


@pytest.fixture
def fake_browser():
    """Return a function creating a FakeBrowser over {url: html}."""

    def _fake_browser(pages: Optional[dict[str, str]] = None) -> FakeBrowser:
        return FakeBrowser(pages if pages is not None else {"https://venue.example/whats-on": LISTING_HTML})

    return _fake_browser


@pytest.fixture
def listing_html():
    """Three .evt containers, the second without a title."""
    return LISTING_HTML


@pytest.fixture
def grouped_html():
    """Listing grouped under h2.day date headings."""
    return GROUPED_HTML


@pytest.fixture
def create_plugin():
    """Return the StaticPlugin constructor."""
    return StaticPlugin


@pytest.fixture
def clock():
    """A FakeClock starting at FIXED_NOW."""
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in tmp_path with no database."""
    return HarvesterSettings(
        DATA_DIR=tmp_path / "data",
        CONFIG_DIR=tmp_path / "configs",
        DATABASE_URL=None,
        STAGGER_MINUTES=5,
        SHUTDOWN_TIMEOUT_S=1.0,
    )


@pytest.fixture
def make_context(clock):
    """
    Return a function building an in-memory HarvestContext over plugins.

    Example:
        context = make_context(create_plugin("a", [raw_item()]))
    """

    def _make_context(*plugins: SourcePlugin, sink=None, trust: Optional[TrustTable] = None) -> HarvestContext:
        return HarvestContext(
            registry=PluginRegistry(native=plugins).load(),
            snapshots=InMemorySnapshotStore(),
            trust=trust or TrustTable(),
            rate_limiter=RateLimiter(),
            sink=sink,
            clock=clock,
        )

    return _make_context
