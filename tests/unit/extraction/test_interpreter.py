"""
Unit tests for the workflow interpreter.

The page is a BeautifulSoup-backed fake (see conftest.FakePage), so
selectors behave like CSS selectors in a browser.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from harvester.config.schema import (
    ClickAction,
    ExtractAction,
    NavigateAction,
    ScrollAction,
    SourceConfig,
    WaitAction,
)
from harvester.errors import WorkflowError
from harvester.extraction.interpreter import InterpreterOptions, WorkflowInterpreter

NOW = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)
BASE = "https://venue.example"

DETAIL_HTML = '<html><body><div class="lineup">Black Midi + Honeyglaze</div></body></html>'


@pytest.fixture
def interpreter():
    """Interpreter bound to the test venue with short timeouts."""
    return WorkflowInterpreter(
        base_url=BASE,
        now=NOW,
        options=InterpreterOptions(default_timeout_ms=1000, fallback_wait_ms=10),
    )


class TestListingExtraction:
    """Tests for the container/field extraction pass."""

    @pytest.mark.asyncio
    async def test_missing_required_field_skips_container(self, interpreter, fake_browser, source_document):
        """Three containers, one without a title: two records and one failure."""
        cfg = SourceConfig.model_validate(source_document())
        browser = fake_browser()

        async with browser.session(cfg) as page:
            result = await interpreter.run(page, cfg.workflow)

        assert len(result.records) == 2
        assert result.failures == 1
        assert "container 1" in result.failure_messages[0]
        assert result.records[0] == {
            "title": "Black Midi",
            "date": "2025-08-15T19:30:00",
            "link": "https://venue.example/events/black-midi",
        }
        assert result.records[1]["title"] == "Squid"
        assert [a.type for a in result.actions] == ["navigate", "wait", "extract"]
        assert all(a.ok for a in result.actions)

    @pytest.mark.asyncio
    async def test_grouped_listing(self, interpreter, fake_browser, grouped_html):
        """Items inherit the nearest preceding date heading."""
        browser = fake_browser({f"{BASE}/grouped": grouped_html})
        action = ExtractAction.model_validate(
            {
                "containerSelector": ".evt",
                "groupSelector": "h2.day",
                "fields": {
                    "title": {"selector": ".title"},
                    "start": {
                        "selector": ".time",
                        "transform": "date-group-datetime",
                        "transformParams": {"dateGroup": "dateGroup"},
                    },
                },
            }
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/grouped"), action])

        assert [r["dateGroup"] for r in result.records] == [
            "Friday 15th August",
            "Friday 15th August",
            "Saturday 16th August",
        ]
        assert [r["start"] for r in result.records] == [
            "2025-08-15T22:00:00",
            "2025-08-15T23:00:00",
            "2025-08-16T21:00:00",
        ]

    @pytest.mark.asyncio
    async def test_fallback_and_multiple(self, interpreter, fake_browser):
        """Fallback values fill missing fields; multiple collects every match."""
        html = """
        <div class="evt">
          <span class="title">Squid</span>
          <span class="tag">post-punk</span><span class="tag">indie</span>
          <img src="/img/squid.jpg">
        </div>
        """
        browser = fake_browser({f"{BASE}/x": html})
        action = ExtractAction.model_validate(
            {
                "containerSelector": ".evt",
                "fields": {
                    "title": {"selector": ".title", "transform": "uppercase"},
                    "price": {"selector": ".price", "fallback": "TBA"},
                    "genres": {"selector": ".tag", "multiple": True},
                    "image": {"selector": "img", "attribute": "src", "transform": "url"},
                    "support": {"selector": ".support", "required": False},
                },
            }
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/x"), action])

        assert result.failures == 0
        assert result.records == [
            {
                "title": "SQUID",
                "price": "TBA",
                "genres": ["post-punk", "indie"],
                "image": "https://venue.example/img/squid.jpg",
            }
        ]

    @pytest.mark.asyncio
    async def test_transform_returning_none_is_missing(self, interpreter, fake_browser):
        """A required field whose transform yields nothing fails the container."""
        browser = fake_browser({f"{BASE}/x": '<div class="evt"><span class="d">soon</span></div>'})
        action = ExtractAction.model_validate(
            {"containerSelector": ".evt", "fields": {"date": {"selector": ".d", "transform": "date"}}}
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/x"), action])

        assert result.records == []
        assert result.failures == 1


class TestFollowUps:
    """Tests for secondary page extraction."""

    @pytest.mark.asyncio
    async def test_follow_up_is_best_effort(self, interpreter, fake_browser, source_document, listing_html):
        """Detail data is merged when reachable; failures keep the listing record."""
        doc = source_document()
        doc["workflow"][2]["followUp"] = {
            "urlField": "link",
            "fields": {"lineup": {"selector": ".lineup"}},
        }
        cfg = SourceConfig.model_validate(doc)
        browser = fake_browser(
            {
                f"{BASE}/whats-on": listing_html,
                f"{BASE}/events/black-midi": DETAIL_HTML,
            }
        )

        async with browser.session(cfg) as page:
            result = await interpreter.run(page, cfg.workflow)

        assert len(result.records) == 2
        assert result.records[0]["lineup"] == "Black Midi + Honeyglaze"
        assert "lineup" not in result.records[1]
        # follow-up problems are reported but are not container failures
        assert result.failures == 1
        assert any("follow-up" in m for m in result.failure_messages)
        assert browser.opened[0].visited == [
            f"{BASE}/whats-on",
            f"{BASE}/events/black-midi",
        ]

    @pytest.mark.asyncio
    async def test_field_level_follow_up(self, interpreter, fake_browser):
        """A follow-up can sit on the field that holds its own url."""
        html = '<div class="evt"><span class="title">Black Midi</span><a href="/events/black-midi">i</a></div>'
        browser = fake_browser({f"{BASE}/x": html, f"{BASE}/events/black-midi": DETAIL_HTML})
        action = ExtractAction.model_validate(
            {
                "containerSelector": ".evt",
                "fields": {
                    "title": {"selector": ".title"},
                    "link": {
                        "selector": "a",
                        "attribute": "href",
                        "followUp": {"urlField": "link", "fields": {"lineup": {"selector": ".lineup"}}},
                    },
                },
            }
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/x"), action])

        assert result.records[0]["lineup"] == "Black Midi + Honeyglaze"

    @pytest.mark.asyncio
    async def test_field_follow_up_reads_url_field(self, interpreter, fake_browser):
        """A follow-up on one field navigates to the value of its urlField."""
        html = '<div class="evt"><span class="title">Black Midi</span><a href="/events/black-midi">i</a></div>'
        browser = fake_browser({f"{BASE}/x": html, f"{BASE}/events/black-midi": DETAIL_HTML})
        action = ExtractAction.model_validate(
            {
                "containerSelector": ".evt",
                "fields": {
                    "title": {
                        "selector": ".title",
                        "followUp": {"urlField": "link", "fields": {"lineup": {"selector": ".lineup"}}},
                    },
                    "link": {"selector": "a", "attribute": "href"},
                },
            }
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/x"), action])

        assert result.records[0]["lineup"] == "Black Midi + Honeyglaze"
        assert result.failure_messages == []
        assert browser.opened[0].visited[-1] == f"{BASE}/events/black-midi"

    @pytest.mark.asyncio
    async def test_follow_up_keeps_fields_it_finds(self, interpreter, fake_browser):
        """A missing detail field is reported; the detail fields that exist are merged."""
        html = '<div class="evt"><span class="title">Black Midi</span><a href="/events/black-midi">i</a></div>'
        browser = fake_browser({f"{BASE}/x": html, f"{BASE}/events/black-midi": DETAIL_HTML})
        action = ExtractAction.model_validate(
            {
                "containerSelector": ".evt",
                "fields": {
                    "title": {"selector": ".title"},
                    "link": {"selector": "a", "attribute": "href"},
                },
                "followUp": {
                    "urlField": "link",
                    "fields": {"lineup": {"selector": ".lineup"}, "doors": {"selector": ".doors"}},
                },
            }
        )

        async with browser.session(None) as page:
            result = await interpreter.run(page, [NavigateAction(url="/x"), action])

        assert result.records[0]["lineup"] == "Black Midi + Honeyglaze"
        assert "doors" not in result.records[0]
        assert result.failures == 0
        assert len(result.failure_messages) == 1
        assert "doors" in result.failure_messages[0]


class TestPageActions:
    """Tests for navigate / wait / click / scroll."""

    @pytest.mark.asyncio
    async def test_navigation_failure_aborts(self, interpreter, fake_browser):
        """A failed navigation raises WorkflowError."""
        browser = fake_browser({})
        async with browser.session(None) as page:
            with pytest.raises(WorkflowError) as exc_info:
                await interpreter.run(page, [NavigateAction(url="/missing")])
        assert exc_info.value.action == "navigate"

    @pytest.mark.asyncio
    async def test_optional_click_failure_continues(self, interpreter, fake_browser):
        """An optional click on a missing element is skipped."""
        browser = fake_browser()
        async with browser.session(None) as page:
            result = await interpreter.run(
                page,
                [NavigateAction(url="/whats-on"), ClickAction(selector=".cookie-accept", optional=True)],
            )
        assert result.actions[-1].ok

    @pytest.mark.asyncio
    async def test_required_click_failure_aborts(self, interpreter, fake_browser):
        """A non-optional click failure aborts the workflow."""
        browser = fake_browser()
        async with browser.session(None) as page:
            with pytest.raises(WorkflowError):
                await interpreter.run(page, [NavigateAction(url="/whats-on"), ClickAction(selector=".nope")])

    @pytest.mark.asyncio
    async def test_click_records_and_waits(self, interpreter, fake_browser):
        """A successful click is performed once."""
        browser = fake_browser()
        async with browser.session(None) as page:
            await interpreter.run(page, [NavigateAction(url="/whats-on"), ClickAction(selector=".evt a", wait_after_ms=1)])
        assert browser.opened[0].clicked == [".evt a"]

    @pytest.mark.asyncio
    async def test_wait_fallback_succeeds_when_present(self, interpreter, fake_browser):
        """A failed visible-wait is retried once by checking for the element."""
        browser = fake_browser()
        async with browser.session(None) as page:
            await page.goto(f"{BASE}/whats-on")
            page.wait_for_selector = AsyncMock(side_effect=TimeoutError("slow"))
            result = await interpreter.run(page, [WaitAction(selector=".evt", timeout_ms=20)])
        assert result.actions[0].ok

    @pytest.mark.asyncio
    async def test_wait_fallback_fails_when_absent(self, interpreter, fake_browser):
        """The fallback raises when the element never shows up."""
        browser = fake_browser()
        async with browser.session(None) as page:
            with pytest.raises(WorkflowError) as exc_info:
                await interpreter.run(
                    page, [NavigateAction(url="/whats-on"), WaitAction(selector=".never", timeout_ms=20)]
                )
        assert exc_info.value.selector == ".never"

    @pytest.mark.asyncio
    async def test_plain_wait_and_scroll(self, interpreter, fake_browser):
        """Waits without a selector pause; scrolls are issued in order."""
        browser = fake_browser()
        async with browser.session(None) as page:
            await interpreter.run(
                page,
                [
                    NavigateAction(url="/whats-on"),
                    WaitAction(timeout_ms=1),
                    ScrollAction(direction="down", amount=500),
                    ScrollAction(direction="bottom"),
                ],
            )
        assert browser.opened[0].scrolls == [500, None]

