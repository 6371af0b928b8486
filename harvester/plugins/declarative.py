"""
Plugins compiled from declarative source documents.

A DeclarativePlugin owns nothing but its SourceConfig. ``fetch_raw`` opens a
Playwright Chromium session, runs the workflow through the interpreter and
always closes the session; ``normalize`` applies the document's mapping to
turn raw records into EventRecords without touching the network.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

from playwright.async_api import async_playwright

from harvester.config.schema import DEFAULT_SCHEDULE, DateFieldMapping, IdStrategy, SourceConfig
from harvester.extraction import dates
from harvester.extraction.interpreter import (
    ExtractionResult,
    InterpreterOptions,
    WorkflowInterpreter,
)
from harvester.extraction.transforms import TransformContext, TransformRegistry, default_registry
from harvester.pipeline.validators import build_record
from harvester.schemas.event import EventRecord, EventStatus, create_slug

from .base import PluginMeta, SourcePlugin

SessionFactory = Callable[[SourceConfig], AbstractAsyncContextManager[Any]]

_STATUS_MARKERS = (
    ("cancelled", EventStatus.CANCELLED),
    ("canceled", EventStatus.CANCELLED),
    ("postponed", EventStatus.POSTPONED),
)


@asynccontextmanager
async def playwright_session(config: SourceConfig) -> AsyncIterator[Any]:
    """Yield a fresh Chromium page configured from ``config.browser``."""
    opts = config.browser
    pw = await async_playwright().start()
    browser = context = None
    try:
        browser = await pw.chromium.launch(headless=opts.headless)
        context_kwargs: dict[str, Any] = {
            "viewport": {"width": opts.viewport.width, "height": opts.viewport.height},
        }
        if opts.user_agent:
            context_kwargs["user_agent"] = opts.user_agent
        context = await browser.new_context(**context_kwargs)
        context.set_default_timeout(opts.timeout_ms)
        page = await context.new_page()
        yield page
    finally:
        if context is not None:
            await context.close()
        if browser is not None:
            await browser.close()
        await pw.stop()


class DeclarativePlugin(SourcePlugin):
    """SourcePlugin backed by a SourceConfig document."""

    def __init__(
        self,
        config: SourceConfig,
        *,
        transforms: TransformRegistry | None = None,
        session_factory: SessionFactory | None = None,
        artifacts_dir: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.meta = PluginMeta(
            name=config.site.source,
            rate_limit_per_min=config.rate_limit.max_requests_per_min,
            default_schedule=config.schedule or DEFAULT_SCHEDULE,
            trust_score=config.trust_score,
            description=config.site.description,
            website=config.site.base_url,
            kind="declarative",
        )
        self.transforms = transforms or default_registry()
        self._session_factory = session_factory or playwright_session
        self._artifacts_dir = Path(artifacts_dir) if artifacts_dir else Path("debug")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.last_extraction: ExtractionResult | None = None

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_raw(self) -> list[dict[str, Any]]:
        interpreter = WorkflowInterpreter(
            self.transforms,
            base_url=self.config.site.base_url,
            now=self._clock(),
            options=InterpreterOptions(default_timeout_ms=self.config.browser.timeout_ms),
        )
        async with self._session_factory(self.config) as page:
            try:
                result = await interpreter.run(page, self.config.workflow)
            except Exception:
                await self._save_debug_artifacts(page)
                raise

        self.last_extraction = result
        if result.failures:
            self.logger.warning(
                "%d container(s) skipped during extraction", result.failures
            )
        return result.records

    async def _save_debug_artifacts(self, page: Any) -> None:
        debug = self.config.debug
        if not (debug.screenshots or debug.save_html):
            return
        self._artifacts_dir.mkdir(parents=True, exist_ok=True)
        base = self._artifacts_dir / f"{self.name}-{int(time.time())}"
        try:
            if debug.screenshots:
                await page.screenshot(path=str(base.with_suffix(".png")), full_page=True)
            if debug.save_html:
                base.with_suffix(".html").write_text(await page.content(), encoding="utf-8")
        except Exception as e:
            self.logger.warning("Could not save debug artifacts: %s", e)
        else:
            self.logger.info("Debug artifacts saved under %s", base)

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    def normalize(self, raw: list[dict[str, Any]]) -> list[EventRecord]:
        ctx = TransformContext(base_url=self.config.site.base_url, now=self._clock())
        out: list[EventRecord] = []
        for idx, item in enumerate(raw):
            candidate = self.map_record(item, ctx)
            if candidate is None:
                self.logger.warning("Record %d has no parseable start date; skipped", idx)
                continue
            record, result = build_record(candidate)
            if record is None:
                self.logger.warning(
                    "Record %d failed mapping: %s", idx, "; ".join(i.message for i in result.errors())
                )
                continue
            out.append(record)
        return out

    def map_record(self, item: dict[str, Any], ctx: TransformContext) -> dict[str, Any] | None:
        """Apply the mapping section to one raw record. None when no start date."""
        m = self.config.mapping
        base = self.config.site.base_url

        start = self._date(item, m.date.start, ctx)
        if start is None:
            return None
        end = self._date(item, m.date.end, ctx) if m.date.end else None

        title = _first(item.get(m.title))
        artists = _as_list(item.get(m.artist)) if m.artist else []
        if not artists and title:
            artists = [title]

        venue = {
            "name": _field_or_literal(item, m.venue.name),
            "address": _field_or_literal(item, m.venue.address),
            "city": _field_or_literal(item, m.venue.city),
            "country": _field_or_literal(item, m.venue.country),
        }

        source_id = None
        if m.id.strategy == IdStrategy.extracted and m.id.fields:
            parts = [_first(item.get(f)) for f in m.id.fields]
            source_id = create_slug("-".join(p for p in parts if p)) or None

        candidate: dict[str, Any] = {
            "source": self.name,
            "source_id": source_id,
            "title": title,
            "artists": artists,
            "genre": _as_list(item.get(m.genres)) if m.genres else [],
            "description": _first(item.get(m.description)) if m.description else None,
            "date_start": start,
            "date_end": end,
            "timezone": m.date.timezone,
            "venue": venue,
            "age_restriction": _first(item.get(m.age_restriction)) if m.age_restriction else None,
            "status": _status_from(title),
            "event_url": _absolute(base, item.get(m.urls.event or m.urls.info)) if (m.urls.event or m.urls.info) else None,
            "tickets_url": _absolute(base, item.get(m.urls.tickets)) if m.urls.tickets else None,
            "images": [_absolute(base, u) for u in _as_list(item.get(m.images))] if m.images else [],
        }
        if m.price and item.get(m.price) is not None:
            candidate["price"] = _first(item.get(m.price))
        return candidate

    def _date(self, item: dict[str, Any], ref: Any, ctx: TransformContext) -> datetime | None:
        if isinstance(ref, DateFieldMapping):
            value = item.get(ref.field)
            if value is not None and ref.transform:
                params = {
                    k: item.get(v, v) if isinstance(v, str) else v
                    for k, v in ref.transform_params.items()
                }
                value = self.transforms.apply(ref.transform, _first(value), params, ctx)
        else:
            value = item.get(ref)
        return _to_datetime(_first(value), ctx.now)


# ---------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------

def _first(v: Any) -> Any:
    if isinstance(v, list):
        return v[0] if v else None
    return v


def _as_list(v: Any) -> list[str]:
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x) for x in v if x]
    s = str(v)
    if "," in s:
        return [p.strip() for p in s.split(",") if p.strip()]
    return [s] if s.strip() else []


def _field_or_literal(item: dict[str, Any], ref: str | None) -> Any:
    if ref is None:
        return None
    return _first(item[ref]) if ref in item else ref


def _absolute(base: str, v: Any) -> str | None:
    v = _first(v)
    if not v:
        return None
    return urljoin(base, str(v)) if base else str(v)


def _status_from(title: str | None) -> str:
    lowered = (title or "").lower()
    for marker, status in _STATUS_MARKERS:
        if marker in lowered:
            return status.value
    return EventStatus.SCHEDULED.value


def _to_datetime(value: Any, now: datetime) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return dates.parse_date(s, now=now)
