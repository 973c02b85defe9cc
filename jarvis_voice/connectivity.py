"""
Network connectivity monitoring

ConnectivityMonitor exposes a single "is offline" boolean and notifies
subscribers when it changes. The state can be set directly (platform path
monitor, tests) or derived from periodic HTTP probes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


@dataclass
class ConnectivityResult:
    """Result of a network connectivity check"""
    is_offline: bool
    latency_ms: float
    timestamp: float
    error: Optional[str] = None


class ConnectivityMonitor:
    """Single source of truth for network reachability"""

    def __init__(
        self,
        probe_urls: Optional[List[str]] = None,
        check_interval: float = 30.0,
        probe_timeout: float = 5.0,
        initially_offline: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.probe_urls = list(probe_urls or [])
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout
        self._transport = transport

        self._is_offline = initially_offline
        self._subscribers: List[ConnectivityCallback] = []
        self._poll_task: Optional[asyncio.Task] = None
        self.consecutive_failures = 0
        self.last_result: Optional[ConnectivityResult] = None

    @property
    def is_offline(self) -> bool:
        return self._is_offline

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register for change notifications; returns a callable that unsubscribes"""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set_offline(self, offline: bool) -> None:
        """Update the state, notifying subscribers only on an actual change"""
        if offline == self._is_offline:
            return

        self._is_offline = offline
        logger.info("🔌 Network unavailable" if offline else "🌐 Network available")

        for callback in list(self._subscribers):
            try:
                callback(offline)
            except Exception as e:
                logger.error(f"Connectivity subscriber failed: {e}")

    async def check(self) -> ConnectivityResult:
        """Probe the configured endpoints once and update the state"""
        start_time = time.time()
        result = ConnectivityResult(
            is_offline=True,
            latency_ms=0.0,
            timestamp=start_time,
            error="All probe endpoints unreachable"
        )

        async with httpx.AsyncClient(timeout=self.probe_timeout, transport=self._transport) as client:
            for url in self.probe_urls:
                try:
                    response = await client.get(url)
                except httpx.HTTPError as e:
                    logger.debug(f"Connectivity probe to {url} failed: {e}")
                    continue

                # Any answer below 5xx proves the network path works
                if response.status_code < 500:
                    result = ConnectivityResult(
                        is_offline=False,
                        latency_ms=(time.time() - start_time) * 1000,
                        timestamp=time.time()
                    )
                    break

        if result.is_offline:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 0

        self.last_result = result
        self.set_offline(result.is_offline)
        return result

    async def _poll(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Connectivity check error: {e}")
            await asyncio.sleep(self.check_interval)

    def start(self) -> None:
        """Begin periodic probing on the running loop"""
        if self._poll_task is not None or not self.probe_urls:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        logger.info(f"Connectivity monitoring started (interval {self.check_interval}s)")

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        logger.info("Connectivity monitoring stopped")


__all__ = ['ConnectivityMonitor', 'ConnectivityResult', 'ConnectivityCallback']
