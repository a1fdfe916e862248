"""Periodic memory sampling that feeds the restart policy."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional

from fetchbot.logging_config import get_logger
from fetchbot.supervisor.events import EventLogger
from fetchbot.supervisor.models import EventType, MemorySnapshot
from fetchbot.supervisor.process_stats import sample_memory

logger = get_logger(__name__)

RestartRequester = Callable[[str], Coroutine[Any, Any, None]]


class MemoryMonitor:
    """Samples process memory on a fixed interval.

    Above ``warn_mb`` a ``high_memory`` event is written; above
    ``critical_mb`` a restart is requested. The monitor never restarts the
    process itself.
    """

    def __init__(
        self,
        events: EventLogger,
        request_restart: RestartRequester,
        warn_mb: int,
        critical_mb: int,
        interval_ms: int,
        sampler: Callable[[], MemorySnapshot] = sample_memory,
    ) -> None:
        self._events = events
        self._request_restart = request_restart
        self.warn_mb = warn_mb
        self.critical_mb = critical_mb
        self.interval = interval_ms / 1000
        self._sampler = sampler
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sampling loop on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="memory-monitor")
        logger.info("memory_monitor_started", interval=self.interval,
                    warn_mb=self.warn_mb, critical_mb=self.critical_mb)

    async def stop(self) -> None:
        if not self._task:
            return
        task, self._task = self._task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("memory_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()

    async def check(self) -> Optional[MemorySnapshot]:
        """Take one sample and act on the thresholds."""
        try:
            snapshot = self._sampler()
        except Exception as exc:
            logger.error("memory_sample_failed", error=str(exc))
            return None

        if snapshot.heap_used > self.warn_mb:
            self._events.log(EventType.HIGH_MEMORY, snapshot.to_dict())

        if snapshot.heap_used > self.critical_mb:
            logger.warning("memory_critical", heap_used=snapshot.heap_used, limit=self.critical_mb)
            await self._request_restart(f"Critical memory usage: {snapshot.heap_used}MB")
        return snapshot
