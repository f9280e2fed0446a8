"""
Polling fallback. Each resource refreshes on its own timer; the interval
tightens while the push channel is down and relaxes once it is back.
"""
from __future__ import annotations
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging

from .config import ClientSettings, client_settings

logger = logging.getLogger(__name__)


class RefreshTimer:
    def __init__(self, name: str, action: Callable[[], Awaitable[object]], healthy: float, degraded: float):
        if degraded >= healthy:
            raise ValueError(f"{name}: degraded interval must be shorter than healthy interval")
        self.name = name
        self.action = action
        self.healthy = healthy
        self.degraded = degraded
        self.is_degraded = False
        self.runs = 0
        self._rearm = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        return self.degraded if self.is_degraded else self.healthy

    def set_degraded(self, degraded: bool) -> None:
        if degraded == self.is_degraded:
            return
        self.is_degraded = degraded
        # Restart the countdown with the new interval right away
        self._rearm.set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=f"refresh-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            self._rearm.clear()
            try:
                await asyncio.wait_for(self._rearm.wait(), timeout=self.interval)
                continue
            except asyncio.TimeoutError:
                pass
            try:
                await self.action()
                self.runs += 1
            except Exception as e:
                logger.warning(f"Polling refresh '{self.name}' failed: {e}")


class Poller:
    """Equipment list, stats and recently-deleted timers driven by one connectivity flag."""

    def __init__(self, reconciler, settings: Optional[ClientSettings] = None):
        s = settings or client_settings
        self.timers: Dict[str, RefreshTimer] = {
            'equipment': RefreshTimer('equipment', reconciler.refresh, s.POLL_EQUIPMENT_HEALTHY, s.POLL_EQUIPMENT_DEGRADED),
            'stats': RefreshTimer('stats', reconciler.refresh_stats, s.POLL_STATS_HEALTHY, s.POLL_STATS_DEGRADED),
            'deleted': RefreshTimer('deleted', reconciler.refresh_deleted, s.POLL_DELETED_HEALTHY, s.POLL_DELETED_DEGRADED),
        }

    def intervals(self) -> Dict[str, float]:
        return {name: t.interval for name, t in self.timers.items()}

    def set_degraded(self, degraded: bool) -> None:
        for timer in self.timers.values():
            timer.set_degraded(degraded)

    def start(self) -> None:
        for timer in self.timers.values():
            timer.start()

    async def stop(self) -> None:
        for timer in self.timers.values():
            await timer.stop()
