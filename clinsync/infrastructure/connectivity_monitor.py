"""Connectivity Monitor - tracks whether REDCap is reachable.

The monitor holds a boolean online/offline state fed by environment
signals: explicit reports (API, CLI, tests) or a TCP probe of the REDCap
host. Listeners are notified only when the state actually changes. The
application wires the offline -> online transition to a bulk sync of
pending records; the monitor itself never retries syncs.

Features:
- Explicit reports and optional TCP probe
- Optional background polling task on the running event loop
- Sync and async callbacks for status changes
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import urlparse

from clinsync.domain.utils import utc_now

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[["ConnectivityState"], Union[None, Awaitable[None]]]


@dataclass
class ConnectivityState:
    """Current connectivity state with metadata."""
    is_online: bool = True
    source: str = "initial"
    last_check: Optional[datetime] = None
    last_change: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectivityMonitor:
    """Online/offline state with change notifications.

    Parameters:
        probe_host: Host to probe (None disables probing; state then only
            changes through ``report``)
        probe_port: TCP port to probe
        initial_online: Starting state
        interval_seconds: Delay between background probes
        timeout_seconds: Timeout of one probe
        clock: Source of timestamps

    Usage:
        monitor = ConnectivityMonitor.from_url(redcap_url)
        monitor.register_callback(on_change)
        await monitor.report(False)   # offline
        await monitor.report(True)    # on_change is called once
    """

    def __init__(
        self,
        probe_host: Optional[str] = None,
        probe_port: int = 443,
        initial_online: bool = True,
        interval_seconds: float = 30.0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now
    ):
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._state = ConnectivityState(is_online=initial_online)
        self._callbacks: List[ConnectivityCallback] = []
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_url(cls, url: Optional[str], **kwargs) -> "ConnectivityMonitor":
        """Build a monitor probing the host of ``url`` (no probe when url is None)."""
        if not url:
            return cls(**kwargs)
        parsed = urlparse(url)
        default_port = 443 if parsed.scheme == "https" else 80
        return cls(probe_host=parsed.hostname, probe_port=parsed.port or default_port, **kwargs)

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def is_offline(self) -> bool:
        return not self._state.is_online

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    async def report(self, online: bool, source: str = "report", error: Optional[str] = None) -> ConnectivityState:
        """Record an environment signal and notify listeners on change.

        Parameters:
            online: Whether REDCap is reachable
            source: Where the signal came from (report, probe)
            error: Probe failure message, if any

        Returns:
            Updated ConnectivityState
        """
        now = self._clock()
        old_online = self._state.is_online
        self._state.last_check = now
        self._state.source = source
        if online:
            self._state.consecutive_failures = 0
            self._state.error_message = None
        else:
            self._state.consecutive_failures += 1
            self._state.error_message = error

        if old_online != online:
            self._state.is_online = online
            self._state.last_change = now
            logger.info(
                f"Connectivity changed: {'online' if old_online else 'offline'} -> "
                f"{'online' if online else 'offline'} ({source})"
            )
            await self._notify_callbacks()

        return self._state

    async def check(self) -> ConnectivityState:
        """Probe the REDCap host and report the result.

        Without a probe host the current state is returned unchanged.
        """
        if not self.probe_host:
            return self._state

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, self.probe_port),
                timeout=self.timeout_seconds,
            )
            writer.close()
            await writer.wait_closed()
            return await self.report(True, source="probe")
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe to {self.probe_host}:{self.probe_port} failed: {e}")
            return await self.report(False, source="probe", error=str(e) or type(e).__name__)

    def register_callback(self, callback: ConnectivityCallback) -> None:
        """Register a callback called with the new state on every transition."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: ConnectivityCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(self._state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in connectivity callback: {e}", exc_info=True)

    def start(self) -> None:
        """Start background probing on the running event loop."""
        if not self.probe_host or self.is_monitoring:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitoring_loop())
        logger.debug("Connectivity monitoring started")

    async def stop(self) -> None:
        """Stop background probing."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Connectivity monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Error in connectivity check: {e}")

    def get_status_display(self) -> dict:
        """Get status information for API display."""
        return {
            "status": "online" if self._state.is_online else "offline",
            "is_online": self._state.is_online,
            "source": self._state.source,
            "probe_host": self.probe_host,
            "monitoring": self.is_monitoring,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_change": self._state.last_change.isoformat() if self._state.last_change else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
