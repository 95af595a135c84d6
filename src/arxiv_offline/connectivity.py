"""Online/offline tracking.

The monitor only records state and notifies listeners on transitions.
Going back online never triggers a fetch by itself; that stays with the
refresh scheduler or an explicit caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

CONNECTIVITY_PROBE_URL = "https://export.arxiv.org/"
CONNECTIVITY_PROBE_TIMEOUT = 5  # seconds
CONNECTIVITY_POLL_INTERVAL = 30  # seconds

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Boolean online state fed by environment signals."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool) -> bool:
        """Record a connectivity signal. Returns True if the state changed."""
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)
        return True

    def mark_online(self) -> bool:
        return self.set_online(True)

    def mark_offline(self) -> bool:
        return self.set_online(False)

    async def probe(
        self,
        client: httpx.AsyncClient,
        *,
        url: str = CONNECTIVITY_PROBE_URL,
        timeout: float = CONNECTIVITY_PROBE_TIMEOUT,
    ) -> bool:
        """Check reachability with a HEAD request and record the result.

        Any HTTP response counts as online; only transport failures
        (DNS, refused connection, timeout) count as offline.
        """
        try:
            await client.head(url, timeout=timeout, follow_redirects=False)
        except httpx.TransportError:
            logger.debug("Connectivity probe to %s failed", url, exc_info=True)
            online = False
        else:
            online = True
        self.set_online(online)
        return online

    async def poll(
        self,
        client: httpx.AsyncClient,
        *,
        interval: float = CONNECTIVITY_POLL_INTERVAL,
        url: str = CONNECTIVITY_PROBE_URL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Probe forever at a fixed interval; cancel the task to stop."""
        while True:
            await self.probe(client, url=url)
            await sleep(interval)


__all__ = [
    "CONNECTIVITY_POLL_INTERVAL",
    "CONNECTIVITY_PROBE_TIMEOUT",
    "CONNECTIVITY_PROBE_URL",
    "ConnectivityListener",
    "ConnectivityMonitor",
]
