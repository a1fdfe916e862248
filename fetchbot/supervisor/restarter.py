"""Auto-restarter: the in-process restart policy.

Every restart request funnels through ``AutoRestarter.request_restart``:

1. a shutdown already in flight turns the request into a no-op;
2. a request inside the cooldown window is logged as ``restart_blocked``;
3. a request past the daily restart limit ends the process with exit code 1;
4. anything else bumps the counters, runs emergency cleanup, saves state and
   exits with code 0 so the process manager relaunches the service.

The shutdown latch is claimed synchronously before the first ``await`` of a
sequence, so concurrent triggers (signal, memory monitor, uncaught error)
cannot start a second sequence.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from typing import Any, Callable, Optional, Union

from fetchbot.logging_config import get_logger
from fetchbot.supervisor.classifier import ErrorClassifier
from fetchbot.supervisor.cleanup import CleanupManager
from fetchbot.supervisor.events import EventLogger
from fetchbot.supervisor.memory import MemoryMonitor
from fetchbot.supervisor.models import (
    MAX_RESTARTS_CAUSE,
    EventType,
    MemorySnapshot,
    RestartState,
    SupervisorConfig,
)
from fetchbot.supervisor.process_stats import sample_memory, uptime_seconds
from fetchbot.supervisor.shutdown import ShutdownCoordinator
from fetchbot.supervisor.state import StateStore

logger = get_logger(__name__)

ChildProcess = Union[subprocess.Popen, asyncio.subprocess.Process]


def epoch_ms() -> int:
    return int(time.time() * 1000)


class SupervisorState:
    """In-memory restart bookkeeping plus the one-way shutdown latch."""

    def __init__(self) -> None:
        self.restart_count = 0
        self.last_restart_ms = 0
        self.child: Optional[ChildProcess] = None
        self._shutting_down = False

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def try_begin_shutdown(self) -> bool:
        """Claim the latch. Returns False if a sequence already owns it."""
        if self._shutting_down:
            return False
        self._shutting_down = True
        return True


class AutoRestarter:
    """Supervises the hosting process: restart policy, cleanup and persistence."""

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        events: Optional[EventLogger] = None,
        store: Optional[StateStore] = None,
        cleanup: Optional[CleanupManager] = None,
        sampler: Callable[[], MemorySnapshot] = sample_memory,
        uptime: Callable[[], float] = uptime_seconds,
        clock: Callable[[], int] = epoch_ms,
        exit_func: Optional[Callable[[int], Any]] = None,
        restarted: bool = False,
        previous_restart_count: str = "unknown",
    ) -> None:
        self.config = config
        self.state = SupervisorState()
        self.events = events or EventLogger(config.log_file, sampler=sampler, uptime=uptime)
        self.store = store or StateStore(config.state_file, config.pid_file)
        self.cleanup = cleanup or CleanupManager(config.cleanup_targets, timeout=config.cleanup_timeout_s)
        self.classifier = ErrorClassifier(config.critical_error_patterns)
        self.memory_monitor = MemoryMonitor(
            self.events,
            self.request_restart,
            warn_mb=config.memory_warn_mb,
            critical_mb=config.memory_critical_mb,
            interval_ms=config.memory_sample_interval_ms,
            sampler=sampler,
        )
        self.shutdown = ShutdownCoordinator(self, exit_func=exit_func)
        self._sampler = sampler
        self._uptime = uptime
        self._clock = clock
        self._restarted = restarted
        self._previous_restart_count = previous_restart_count

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> AutoRestarter:
        """Build a supervisor from application ``Settings``."""
        return cls(
            settings.supervisor_config(),
            restarted=settings.fetchbot_restarted,
            previous_restart_count=settings.previous_restart_count,
            **kwargs,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install signal and uncaught-error handlers (once)."""
        self.shutdown.install(loop)

    async def start(self) -> None:
        """Load persisted state, announce startup and begin memory sampling."""
        try:
            self._load_state()
            self.events.log(EventType.AUTO_RESTART_STARTED, {
                "restartCount": self.state.restart_count,
                "maxRestarts": self.config.max_restarts,
                "pid": os.getpid(),
            })
            if self._restarted:
                self.events.log(EventType.RESTART_SUCCESS, {
                    "previousRestartCount": self._previous_restart_count,
                })
            self.memory_monitor.start()
            logger.info("auto_restart_started", restart_count=self.state.restart_count,
                        max_restarts=self.config.max_restarts)
        except Exception as exc:
            logger.error("auto_restart_start_failed", error=str(exc))

    def _load_state(self) -> None:
        saved = self.store.load()
        if saved is None:
            self.state.restart_count = 0
            self.state.last_restart_ms = 0
            return
        self.state.restart_count = saved.restart_count
        self.state.last_restart_ms = saved.last_restart_ms
        if self.store.same_day(saved.saved_at):
            self.events.log(EventType.STATE_LOADED, {
                "previousRestarts": saved.restart_count,
                "previousPid": saved.pid,
            })

    async def stop(self) -> None:
        """Disable further restarts, stop sampling and hand signals back."""
        self.state.try_begin_shutdown()
        # With the latch held the handlers would swallow every signal
        self.shutdown.uninstall()
        await self.memory_monitor.stop()
        self.events.log(EventType.AUTO_RESTART_STOPPED, "Manual stop")

    def track_child(self, process: Optional[ChildProcess]) -> None:
        """Register a child process to be terminated on graceful shutdown."""
        self.state.child = process

    # ── Restart policy ────────────────────────────────────────────────

    async def request_restart(self, reason: str) -> None:
        """Ask for a restart. See the module docstring for the decision order."""
        if self.state.is_shutting_down:
            return

        now = self._clock()
        if now - self.state.last_restart_ms < self.config.cooldown_ms:
            self.events.log(EventType.RESTART_BLOCKED, f"Restart blocked by cooldown. Reason: {reason}")
            logger.warning("restart_blocked", reason=reason)
            return

        if self.state.restart_count >= self.config.max_restarts:
            if not self.state.try_begin_shutdown():
                return
            self.events.log(
                EventType.RESTART_LIMIT,
                f"Limit of {self.config.max_restarts} restarts reached. Shutting down.",
            )
            logger.error("restart_limit_reached", max_restarts=self.config.max_restarts, reason=reason)
            await self.shutdown.shutdown_sequence(MAX_RESTARTS_CAUSE)
            return

        self.state.restart_count += 1
        self.state.last_restart_ms = now
        self.state.try_begin_shutdown()

        self.events.log(EventType.RESTART_INITIATED, {
            "reason": reason,
            "count": self.state.restart_count,
            "maxRestarts": self.config.max_restarts,
        })
        logger.warning("restart_initiated", reason=reason, count=self.state.restart_count,
                       max_restarts=self.config.max_restarts)

        try:
            await self.cleanup.run_emergency_cleanup()
            self.store.save(self.current_state())
        except Exception as exc:
            logger.error("restart_sequence_failed", error=str(exc))
            await self._force_exit("Restart sequence failed")
            return

        self.events.log(EventType.RESTART_HANDOFF, "Exiting with code 0; the process manager relaunches the service.")
        await self.shutdown.terminate(0, self.config.restart_exit_delay_s)

    async def manual_restart(self, reason: str = "Manual restart") -> None:
        """Restart on operator request, subject to the same cooldown and limit."""
        self.events.log(EventType.MANUAL_RESTART, reason)
        await self.request_restart(reason)

    async def force_restart(self, reason: str) -> None:
        """Exit with code 1 right away, bypassing cooldown and limit."""
        if not self.state.try_begin_shutdown():
            return
        await self._force_exit(reason)

    async def _force_exit(self, reason: str) -> None:
        try:
            self.events.write(EventType.FORCE_RESTART, reason)
        except Exception as exc:
            logger.warning("force_restart_log_failed", error=str(exc))
        try:
            self.store.save(self.current_state())
        except Exception as exc:
            logger.warning("force_restart_save_failed", error=str(exc))
        await self.shutdown.terminate(1, self.config.force_exit_delay_s)

    # ── Introspection ─────────────────────────────────────────────────

    def current_state(self) -> RestartState:
        return RestartState(
            restart_count=self.state.restart_count,
            last_restart_ms=self.state.last_restart_ms,
            saved_at=self.store.now(),
            pid=os.getpid(),
            memory=self._sampler(),
            uptime_seconds=self._uptime(),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "restartCount": self.state.restart_count,
            "maxRestarts": self.config.max_restarts,
            "lastRestart": self.state.last_restart_ms,
            "isShuttingDown": self.state.is_shutting_down,
            "uptime": self._uptime(),
            "memoryUsage": self._sampler().to_dict(),
            "pid": os.getpid(),
        }
