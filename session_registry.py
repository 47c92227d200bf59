"""
Process-wide map of session id -> SessionMonitor.

Start and stop for the same id are serialized with a per-id lock, so two
concurrent starts can never leave two browsers polling one session. Different
ids never wait on each other. A lock lives only while someone holds or waits
on it, and a monitor that stops itself is dropped from the map.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from session_monitor import MonitorRequest, SessionMonitor

LOGGER = logging.getLogger(__name__)

MonitorFactory = Callable[[str, MonitorRequest], SessionMonitor]


class SessionRegistry:
    def __init__(self, monitor_factory: MonitorFactory):
        self._monitor_factory = monitor_factory
        self._monitors: Dict[str, SessionMonitor] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def _forget(self, monitor: SessionMonitor) -> None:
        # Only the registered monitor may remove itself; a replacement keeps its slot
        if self._monitors.get(monitor.session_id) is monitor:
            del self._monitors[monitor.session_id]
            LOGGER.info("[Registry] Session %s stopped on its own, removed", monitor.session_id)

    async def start(self, session_id: str, request: MonitorRequest) -> SessionMonitor:
        """Replace any existing monitor for the id with a freshly started one."""
        async with self._session_lock(session_id):
            existing = self._monitors.pop(session_id, None)
            if existing is not None:
                LOGGER.info("[Registry] Session %s already exists, stopping old one first", session_id)
                await existing.stop()

            monitor = self._monitor_factory(session_id, request)
            monitor.on_stopped = self._forget
            await monitor.start()
            self._monitors[session_id] = monitor
            return monitor

    async def stop(self, session_id: str) -> Optional[SessionMonitor]:
        """Stop and forget the session. Returns None when the id is unknown."""
        async with self._session_lock(session_id):
            monitor = self._monitors.pop(session_id, None)
            if monitor is None:
                return None
            await monitor.stop()
            return monitor

    def get(self, session_id: str) -> Optional[SessionMonitor]:
        return self._monitors.get(session_id)

    def sessions(self) -> List[SessionMonitor]:
        return list(self._monitors.values())

    @property
    def active_count(self) -> int:
        return sum(1 for monitor in self._monitors.values() if monitor.is_active)

    async def stop_all(self) -> None:
        for session_id in list(self._monitors):
            await self.stop(session_id)
