"""Network reachability probing."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import httpx

from signal_trader.events import EventBus, NetworkLost, NetworkRestored
from signal_trader.schemas import NetworkStatus, utcnow
from signal_trader.utils.logging import get_logger

# Consecutive failed probes before "unstable" becomes "offline".
_OFFLINE_AFTER_FAILURES = 2


class ConnectivityMonitor:
    """HEAD-probes a well-known URL and tracks online/unstable/offline."""

    def __init__(
        self,
        bus: EventBus,
        *,
        probe_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bus = bus
        self._probe_url = probe_url
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._logger = get_logger("signal_trader.resilience.connectivity")
        self.status: NetworkStatus = "offline"
        self.last_check: datetime = clock()
        self._consecutive_failures = 0

    async def probe(self) -> bool:
        """One bounded reachability check. Never raises."""
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.head(self._probe_url)
        except httpx.HTTPError as exc:
            self._logger.debug("connectivity_probe_failed", url=self._probe_url, error=str(exc))
            return False
        return response.is_success

    async def check(self) -> NetworkStatus:
        """Probe once, update status and publish online/offline transitions."""
        online = await self.probe()
        self.last_check = self._clock()
        previous = self.status
        if online:
            self._consecutive_failures = 0
            self.status = "online"
            if previous != "online":
                self._logger.info("network_restored", previous=previous)
                await self._bus.publish(NetworkRestored())
            return self.status

        self._consecutive_failures += 1
        if self._consecutive_failures >= _OFFLINE_AFTER_FAILURES or previous == "offline":
            self.status = "offline"
        else:
            self.status = "unstable"
        if previous != "offline" and self.status == "offline":
            self._logger.warning("network_lost", failures=self._consecutive_failures)
            await self._bus.publish(NetworkLost())
        return self.status

    async def mark_offline(self) -> None:
        """Record an observed transport failure outside the probe schedule."""
        previous = self.status
        self.status = "offline"
        self.last_check = self._clock()
        if previous != "offline":
            self._logger.warning("network_lost", source="transport_error")
            await self._bus.publish(NetworkLost())
