"""Periodic background refresh.

One scheduler per engine; it owns its own task, so nothing is shared at
module level. ``stop`` cancels future ticks only: a fetch that already
started runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from arxiv_offline.feed_sync import FETCH_SKIPPED, FeedSyncEngine
from arxiv_offline.models import AUTO_REFRESH_INTERVAL_SECONDS, FeedQuery

logger = logging.getLogger(__name__)

# tick() results
TICK_FETCHED = "fetched"
TICK_OFFLINE = "offline"
TICK_IN_FLIGHT = "in_flight"
TICK_FRESH = "fresh"


class RefreshScheduler:
    """Fires every ``interval_seconds`` and refreshes the engine's feed when due."""

    def __init__(
        self,
        engine: FeedSyncEngine,
        *,
        interval_seconds: float = AUTO_REFRESH_INTERVAL_SECONDS,
        query: Callable[[], FeedQuery] | None = None,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._engine = engine
        self._interval = interval_seconds
        self._query = query or (lambda: engine.state.query)
        self._now = now
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[str]] = set()

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. Calling start on a running scheduler does nothing."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Refresh scheduler started (interval %.0fs)", self._interval)

    def stop(self) -> None:
        """Cancel future ticks. Calling stop on a stopped scheduler does nothing."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        logger.debug("Refresh scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for any tick that was already running when ``stop`` was called."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            tick = asyncio.ensure_future(self.tick())
            self._pending.add(tick)
            tick.add_done_callback(self._pending.discard)
            # Shielded: cancelling the loop must not interrupt the fetch.
            await asyncio.shield(tick)

    async def tick(self) -> str:
        """Run one scheduling decision and return what happened."""
        if not self._engine.monitor.is_online:
            logger.debug("Auto-refresh skipped: offline")
            return TICK_OFFLINE
        if self._engine.is_fetching:
            logger.debug("Auto-refresh skipped: fetch in flight")
            return TICK_IN_FLIGHT

        query = self._query()
        last_refresh = await self._engine.last_refresh_for(query)
        if last_refresh is not None and self._now() - last_refresh < self._interval:
            logger.debug("Auto-refresh skipped: refreshed %.0fs ago", self._now() - last_refresh)
            return TICK_FRESH

        logger.info("Auto-refreshing feed")
        outcome = await self._engine.fetch_feed(query)
        if outcome.result == FETCH_SKIPPED:
            return TICK_IN_FLIGHT
        return TICK_FETCHED


__all__ = [
    "TICK_FETCHED",
    "TICK_FRESH",
    "TICK_IN_FLIGHT",
    "TICK_OFFLINE",
    "RefreshScheduler",
]
