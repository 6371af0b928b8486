"""
harvester.runtime.rate_limiter

Per-source request budgets and failure backoff.

Each source gets:
- a token reservoir of N calls per interval (default 60s); the reservoir
  refills completely when the interval that started with its first call
  has elapsed
- an asyncio.Lock, so at most one call per source is in flight
- an exponential retry delay that grows with consecutive failures and is
  cleared by the next success, independent of the token budget

Budgets for different sources never block each other.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from harvester.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# consecutive capped delays before a warning is logged
CAP_WARNING_THRESHOLD = 3


@dataclass(frozen=True)
class BackoffPolicy:
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 1.0
    max_delay_s: float = 300.0
    jitter: float = 0.0

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N (number of consecutive failures)
        """
        if self.backoff_mode == "none" or attempt <= 0:
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))

        delay = min(delay, self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)  # +- jitter
        return max(0.0, delay)


@dataclass
class SourceBudget:
    source: str
    capacity: int
    interval_s: float
    tokens: int = 0
    window_started: float | None = None
    failures: int = 0
    retry_after: float = 0.0
    capped_streak: int = 0
    calls: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def snapshot(self, now: float) -> dict[str, Any]:
        return {
            "capacity": self.capacity,
            "interval_s": self.interval_s,
            "tokens_left": self.tokens if self.window_started is not None else self.capacity,
            "failures": self.failures,
            "retry_in_s": max(0.0, self.retry_after - now),
            "calls": self.calls,
            "in_flight": self.lock.locked(),
        }


class RateLimiter:
    """
    Process-local limiter keyed by source name.

    ``clock`` and ``sleep`` are injectable so tests can run on virtual time.
    """

    def __init__(
        self,
        *,
        interval_s: float = 60.0,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = interval_s
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._sleep = sleep
        self._budgets: dict[str, SourceBudget] = {}

    def budget_for(self, source: str, per_interval: int) -> SourceBudget:
        if per_interval < 1:
            raise ValueError(f"{source}: budget must allow at least one call per interval")
        b = self._budgets.get(source)
        if b is None:
            b = SourceBudget(source=source, capacity=per_interval, interval_s=self.interval_s)
            self._budgets[source] = b
        elif b.capacity != per_interval:
            # capacity changes (config reload) apply from the next window
            b.capacity = per_interval
        return b

    async def schedule(
        self,
        source: str,
        per_interval: int,
        fn: Callable[[], Awaitable[T]],
        *,
        retries: int = 0,
    ) -> T:
        """
        Run ``fn`` under the source's budget.

        With ``retries`` > 0 a failing call is retried after the backoff
        delay; when they are exhausted RateLimitError wraps the last error.
        With no retries the original exception propagates.
        """
        b = self.budget_for(source, per_interval)
        async with b.lock:
            attempt = 0
            while True:
                await self._wait_backoff(b)
                await self._take_token(b)
                attempt += 1
                b.calls += 1
                try:
                    result = await fn()
                except Exception as e:
                    self._record_failure(b)
                    if attempt > retries:
                        if retries:
                            raise RateLimitError(source, attempt, e) from e
                        raise
                    logger.info(
                        "%s: attempt %d failed (%s); retrying in %.1fs",
                        source, attempt, e, max(0.0, b.retry_after - self._clock()),
                    )
                    continue
                self._record_success(b)
                return result

    async def _take_token(self, b: SourceBudget) -> None:
        while True:
            now = self._clock()
            if b.window_started is None or now - b.window_started >= b.interval_s:
                b.window_started = now
                b.tokens = b.capacity
            if b.tokens > 0:
                b.tokens -= 1
                return
            wait = b.interval_s - (now - b.window_started)
            logger.debug("%s: budget exhausted, waiting %.2fs", b.source, wait)
            await self._sleep(max(wait, 0.0))

    async def _wait_backoff(self, b: SourceBudget) -> None:
        wait = b.retry_after - self._clock()
        if wait > 0:
            logger.debug("%s: backing off %.2fs", b.source, wait)
            await self._sleep(wait)

    def _record_failure(self, b: SourceBudget) -> None:
        b.failures += 1
        delay = self.backoff.compute_backoff_s(b.failures)
        b.retry_after = self._clock() + delay
        if delay >= self.backoff.max_delay_s:
            b.capped_streak += 1
            if b.capped_streak >= CAP_WARNING_THRESHOLD:
                logger.warning(
                    "%s: backoff at its cap (%.0fs) for %d consecutive failures",
                    b.source, delay, b.capped_streak,
                )

    def _record_success(self, b: SourceBudget) -> None:
        b.failures = 0
        b.retry_after = 0.0
        b.capped_streak = 0

    def next_delay_s(self, source: str) -> float:
        """Backoff still pending for ``source`` (0 when none)."""
        b = self._budgets.get(source)
        if b is None:
            return 0.0
        return max(0.0, b.retry_after - self._clock())

    def stats(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        return {name: b.snapshot(now) for name, b in sorted(self._budgets.items())}

    def reset(self, source: str | None = None) -> None:
        """Forget one source's budget, or all of them."""
        if source is None:
            self._budgets.clear()
        else:
            self._budgets.pop(source, None)
