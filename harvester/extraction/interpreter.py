"""Declarative workflow interpreter for browser pages.

A source document carries an ordered workflow such as:

  workflow: [
    {"type": "navigate", "url": "https://venue.example/whats-on"},
    {"type": "wait", "selector": ".event", "timeout": 10000},
    {"type": "click", "selector": "button.cookies", "optional": true},
    {"type": "scroll", "direction": "bottom", "waitAfter": 500},
    {"type": "extract", "containerSelector": ".event", "fields": {...}}
  ]

The interpreter walks it strictly in order against an async Playwright
``Page``. Navigation, wait and click failures abort the workflow (they make
the page unusable); extract never aborts: a container missing a required
field is counted as a failure and skipped.

Follow-ups (secondary pages linked from a record) run after the listing
pass, one at a time, and never nest deeper than one level.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin

from harvester.config.schema import (
    ClickAction,
    ExtractAction,
    FieldSpec,
    FollowUp,
    NavigateAction,
    ScrollAction,
    WaitAction,
    WaitCondition,
)
from harvester.errors import RequiredFieldMissing, WorkflowError

from .dates import clean
from .transforms import TransformContext, TransformRegistry, default_registry

logger = logging.getLogger(__name__)

RawRecord = dict[str, Any]

_MATCHES_JS = "(el, selector) => el.matches(selector)"
_SCROLL_BY_JS = "(dy) => window.scrollBy(0, dy === null ? window.innerHeight : dy)"
_SCROLL_UP_JS = "(dy) => window.scrollBy(0, -(dy === null ? window.innerHeight : dy))"
_SCROLL_BOTTOM_JS = "() => window.scrollTo(0, document.body.scrollHeight)"


@dataclass
class ActionResult:
    """Hold the result of a single workflow action."""

    type: str
    ok: bool = True
    elapsed_ms: float = 0.0
    error: str | None = None


@dataclass
class ExtractionResult:
    """Records produced by a workflow plus what went wrong along the way."""

    records: list[RawRecord] = field(default_factory=list)
    failures: int = 0
    failure_messages: list[str] = field(default_factory=list)
    actions: list[ActionResult] = field(default_factory=list)

    def add_failure(self, message: str) -> None:
        self.failures += 1
        self.failure_messages.append(message)


@dataclass(frozen=True)
class InterpreterOptions:
    default_timeout_ms: int = 30000
    # single bounded retry after a failed visible-wait
    fallback_wait_ms: int = 5000
    follow_up_depth: int = 1


@dataclass
class _PendingFollowUp:
    record: RawRecord
    url: str
    follow_up: FollowUp


class WorkflowInterpreter:
    """Execute a source workflow against an async Playwright page."""

    def __init__(
        self,
        transforms: TransformRegistry | None = None,
        *,
        base_url: str = "",
        now: datetime | None = None,
        options: InterpreterOptions | None = None,
    ) -> None:
        self.transforms = transforms or default_registry()
        self.base_url = base_url
        self.options = options or InterpreterOptions()
        self.ctx = TransformContext(base_url=base_url, now=now or datetime.now(timezone.utc))

    async def run(self, page: Any, workflow: Sequence[Any]) -> ExtractionResult:
        """Run every action in order and return the accumulated records."""
        result = ExtractionResult()
        for idx, action in enumerate(workflow):
            t0 = time.time()
            res = ActionResult(type=action.type)
            try:
                if isinstance(action, NavigateAction):
                    await self._navigate(page, action)
                elif isinstance(action, WaitAction):
                    await self._wait(page, action)
                elif isinstance(action, ClickAction):
                    await self._click(page, action)
                elif isinstance(action, ScrollAction):
                    await self._scroll(page, action)
                elif isinstance(action, ExtractAction):
                    await self._extract(page, action, result)
                else:
                    raise WorkflowError(str(getattr(action, "type", "?")), f"unknown action at step {idx}")
            except WorkflowError as e:
                res.ok = False
                res.error = str(e)
                raise
            except Exception as e:
                res.ok = False
                res.error = str(e)
                raise WorkflowError(action.type, str(e), selector=getattr(action, "selector", None)) from e
            finally:
                res.elapsed_ms = (time.time() - t0) * 1000
                result.actions.append(res)

        logger.info(
            "Workflow finished: %d record(s), %d failure(s)", len(result.records), result.failures
        )
        return result

    # ------------------------------------------------------------------
    # Page actions
    # ------------------------------------------------------------------

    async def _navigate(self, page: Any, action: NavigateAction) -> None:
        url = urljoin(self.base_url, action.url) if self.base_url else action.url
        logger.debug("Navigating to %s", url)
        await page.goto(url, timeout=self.options.default_timeout_ms)
        if action.wait_for_load:
            await page.wait_for_load_state("domcontentloaded", timeout=self.options.default_timeout_ms)

    async def _wait(self, page: Any, action: WaitAction) -> None:
        timeout = action.timeout_ms or self.options.default_timeout_ms
        if action.condition == WaitCondition.networkidle:
            await page.wait_for_load_state("networkidle", timeout=timeout)
            return
        if not action.selector:
            await asyncio.sleep(timeout / 1000)
            return

        try:
            await page.wait_for_selector(action.selector, state=action.condition.value, timeout=timeout)
        except Exception as e:
            if action.condition != WaitCondition.visible:
                raise
            logger.warning("Wait for %s failed (%s); retrying once after a pause", action.selector, e)
            await asyncio.sleep(min(self.options.fallback_wait_ms, timeout / 2) / 1000)
            if await page.query_selector(action.selector) is None:
                raise WorkflowError("wait", f"selector never appeared: {e}", selector=action.selector) from e
            logger.info("Selector %s present after fallback wait", action.selector)

    async def _click(self, page: Any, action: ClickAction) -> None:
        try:
            await page.click(action.selector, timeout=self.options.default_timeout_ms)
        except Exception:
            if not action.optional:
                raise
            logger.warning("Optional click failed for selector: %s", action.selector)
            return
        if action.wait_after_ms:
            await asyncio.sleep(action.wait_after_ms / 1000)

    async def _scroll(self, page: Any, action: ScrollAction) -> None:
        if action.direction.value == "bottom":
            await page.evaluate(_SCROLL_BOTTOM_JS)
        elif action.direction.value == "up":
            await page.evaluate(_SCROLL_UP_JS, action.amount)
        else:
            await page.evaluate(_SCROLL_BY_JS, action.amount)
        if action.wait_after_ms:
            await asyncio.sleep(action.wait_after_ms / 1000)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _extract(self, page: Any, action: ExtractAction, result: ExtractionResult) -> None:
        items = await self._containers(page, action)
        logger.info("Found %d container(s) for %s", len(items), action.container_selector)

        pending: list[_PendingFollowUp] = []
        for idx, (container, group) in enumerate(items):
            record: RawRecord = {}
            if action.group_selector:
                record[action.group_field] = group
            record_pending: list[_PendingFollowUp] = []
            try:
                await self._read_fields(container, action.fields, record, record_pending)
            except RequiredFieldMissing as e:
                result.add_failure(f"container {idx}: {e}")
                logger.warning("Skipping container %d: %s", idx, e)
                continue
            except Exception as e:
                result.add_failure(f"container {idx}: {e}")
                logger.warning("Skipping container %d after error: %s", idx, e)
                continue

            pending.extend(record_pending)
            if action.follow_up:
                url = record.get(action.follow_up.url_field)
                if isinstance(url, str) and url:
                    pending.append(_PendingFollowUp(record, url, action.follow_up))
            result.records.append(record)

        for item in pending:
            await self._follow(page, item, result)

    async def _containers(self, page: Any, action: ExtractAction) -> list[tuple[Any, str | None]]:
        if not action.group_selector:
            return [(c, None) for c in await page.query_selector_all(action.container_selector)]

        # headings and items in document order; items inherit the last heading
        combined = f"{action.group_selector}, {action.container_selector}"
        out: list[tuple[Any, str | None]] = []
        current: str | None = None
        for el in await page.query_selector_all(combined):
            if await el.evaluate(_MATCHES_JS, action.group_selector):
                current = clean(await el.inner_text()) or None
            else:
                out.append((el, current))
        return out

    async def _read_fields(
        self,
        root: Any,
        fields: dict[str, FieldSpec],
        record: RawRecord,
        pending: list[_PendingFollowUp],
    ) -> None:
        follow_ups: list[FollowUp] = []
        for name, spec in fields.items():
            value = await self._read_field(root, name, spec, record)
            if value is None:
                continue
            record[name] = value
            if spec.follow_up is not None:
                follow_ups.append(spec.follow_up)

        # urlField may name a field read after the one carrying the follow-up
        for follow_up in follow_ups:
            url = record.get(follow_up.url_field)
            if isinstance(url, str) and url:
                pending.append(_PendingFollowUp(record, url, follow_up))
            else:
                logger.debug("No %s value for follow-up", follow_up.url_field)

    async def _read_field(self, root: Any, name: str, spec: FieldSpec, record: RawRecord) -> Any:
        if spec.multiple:
            values = []
            for node in await root.query_selector_all(spec.selector):
                v = await self._read_node(node, spec.attribute)
                if v:
                    values.append(v)
            value: Any = values or None
        else:
            node = await root.query_selector(spec.selector)
            value = await self._read_node(node, spec.attribute) if node is not None else None

        if value is not None and spec.transform:
            params = self._resolve_params(spec.transform_params, record)
            value = self.transforms.apply(spec.transform, value, params, self.ctx)
            if value == [] or value == "":
                value = None

        if value is None:
            value = spec.fallback
        if value is None and spec.required:
            raise RequiredFieldMissing(name, spec.selector)
        return value

    async def _read_node(self, node: Any, attribute: str) -> str | None:
        if attribute == "text":
            text = await node.inner_text()
            if not text:
                text = await node.text_content()
            return clean(text) or None
        if attribute == "innerHTML":
            html = await node.inner_html()
            return html.strip() or None
        raw = await node.get_attribute(attribute)
        return raw.strip() if raw and raw.strip() else None

    @staticmethod
    def _resolve_params(params: dict[str, Any], record: RawRecord) -> dict[str, Any]:
        """String params naming an already extracted field take that field's value."""
        return {k: record.get(v, v) if isinstance(v, str) else v for k, v in params.items()}

    async def _follow(self, page: Any, item: _PendingFollowUp, result: ExtractionResult) -> None:
        if self.options.follow_up_depth < 1:
            return
        url = urljoin(self.base_url, item.url) if self.base_url else item.url
        try:
            await page.goto(url, timeout=self.options.default_timeout_ms)
            await page.wait_for_load_state("domcontentloaded", timeout=self.options.default_timeout_ms)
        except Exception as e:
            # the listing record stays, without the detail page data
            result.failure_messages.append(f"follow-up {url}: {e}")
            logger.warning("Follow-up failed for %s: %s", url, e)
            return

        # each detail field is kept or skipped on its own
        extra: RawRecord = dict(item.record)
        for name, spec in item.follow_up.fields.items():
            try:
                value = await self._read_field(page, name, spec, extra)
            except RequiredFieldMissing as e:
                result.failure_messages.append(f"follow-up {url}: {e}")
                logger.debug("Follow-up field missing on %s: %s", url, e)
                continue
            except Exception as e:
                result.failure_messages.append(f"follow-up {url}: field {name}: {e}")
                logger.warning("Follow-up field %s failed on %s: %s", name, url, e)
                continue
            if value is not None:
                extra[name] = value
        item.record.update(extra)
