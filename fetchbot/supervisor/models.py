"""Data models for the auto-restart supervisor."""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

MAX_RESTARTS_CAUSE = "MAX_RESTARTS_REACHED"

DEFAULT_CRITICAL_PATTERNS: tuple[str, ...] = (
    "ENOSPC",       # no space left on device
    "ENOMEM",       # out of memory
    "EMFILE",       # too many open files
    "ECONNRESET",   # connection reset by peer
    "MemoryError",
)


class EventType(StrEnum):
    """Event tags written to the supervisor event log."""
    AUTO_RESTART_STARTED = "auto_restart_started"
    AUTO_RESTART_STOPPED = "auto_restart_stopped"
    STATE_LOADED = "state_loaded"
    RESTART_SUCCESS = "restart_success"
    CRITICAL_ERROR = "critical_error"
    HIGH_MEMORY = "high_memory"
    WARNING = "warning"
    RESTART_BLOCKED = "restart_blocked"
    RESTART_LIMIT = "restart_limit"
    RESTART_INITIATED = "restart_initiated"
    RESTART_HANDOFF = "restart_handoff"
    MANUAL_RESTART = "manual_restart"
    FORCE_RESTART = "force_restart"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"


@dataclass(frozen=True)
class MemorySnapshot:
    """Process memory reading, in whole megabytes."""

    heap_used: int = 0
    heap_total: int = 0
    rss: int = 0
    external: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "heapUsed": self.heap_used,
            "heapTotal": self.heap_total,
            "rss": self.rss,
            "external": self.external,
        }

    @classmethod
    def from_dict(cls, data: Any) -> MemorySnapshot:
        if not isinstance(data, dict):
            return cls()
        return cls(
            heap_used=int(data.get("heapUsed", 0) or 0),
            heap_total=int(data.get("heapTotal", 0) or 0),
            rss=int(data.get("rss", 0) or 0),
            external=int(data.get("external", 0) or 0),
        )


@dataclass(frozen=True)
class RestartState:
    """Restart bookkeeping persisted between process lifetimes."""

    restart_count: int = 0
    last_restart_ms: int = 0
    saved_at: Optional[dt.datetime] = None
    pid: int = 0
    memory: MemorySnapshot = field(default_factory=MemorySnapshot)
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "restartCount": self.restart_count,
            "lastRestart": self.last_restart_ms,
            "timestamp": self.saved_at.isoformat() if self.saved_at else None,
            "pid": self.pid,
            "memoryUsage": self.memory.to_dict(),
            "uptime": self.uptime_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RestartState:
        """Build a state from its JSON form.

        Raises ``ValueError``/``TypeError`` on malformed content; the store
        treats those as an absent state.
        """
        if not isinstance(data, dict):
            raise TypeError("restart state must be a JSON object")
        count = int(data.get("restartCount") or 0)
        if count < 0:
            raise ValueError(f"negative restart count: {count}")
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, str):
            raise ValueError("restart state has no timestamp")
        return cls(
            restart_count=count,
            last_restart_ms=int(data.get("lastRestart") or 0),
            saved_at=dt.datetime.fromisoformat(timestamp),
            pid=int(data.get("pid") or 0),
            memory=MemorySnapshot.from_dict(data.get("memoryUsage")),
            uptime_seconds=float(data.get("uptime") or 0.0),
        )


@dataclass(frozen=True)
class LogEntry:
    """One line of the supervisor event log."""

    timestamp: str
    type: str
    data: Any
    pid: int
    uptime: float
    memory: MemorySnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "data": self.data,
            "pid": self.pid,
            "uptime": self.uptime,
            "memoryUsage": self.memory.to_dict(),
        }


@dataclass(frozen=True)
class SupervisorConfig:
    """Immutable supervisor tunables, fixed for the lifetime of a run.

    Attributes:
        max_restarts: Restarts allowed per calendar day before a terminal shutdown.
        cooldown_ms: Minimum time between two restart initiations.
        critical_error_patterns: Substrings / exact codes that mark an error as critical.
        memory_warn_mb: Heap usage above which a ``high_memory`` event is written.
        memory_critical_mb: Heap usage above which a restart is requested.
        memory_sample_interval_ms: Memory sampling period.
        state_file: Restart state JSON location.
        pid_file: Pid file location.
        log_file: NDJSON event log location.
        cleanup_targets: ``<directory>/<glob>`` entries removed during emergency cleanup.
        cleanup_timeout_s: Bound for each individual temp-file removal.
        restart_exit_delay_s: Delay before exiting with 0 after a restart sequence.
        shutdown_exit_delay_s: Delay before exiting after a graceful shutdown.
        force_exit_delay_s: Delay before exiting with 1 after a forced restart.
    """

    max_restarts: int = 5
    cooldown_ms: int = 30_000
    critical_error_patterns: frozenset[str] = frozenset(DEFAULT_CRITICAL_PATTERNS)
    memory_warn_mb: int = 512
    memory_critical_mb: int = 1024
    memory_sample_interval_ms: int = 60_000
    state_file: Path = Path("data/restart-state.json")
    pid_file: Path = Path("data/fetchbot.pid")
    log_file: Path = Path("logs/auto-restart.log")
    cleanup_targets: tuple[str, ...] = ("/tmp/fetchbot-*", "temp/*")
    cleanup_timeout_s: float = 5.0
    restart_exit_delay_s: float = 2.0
    shutdown_exit_delay_s: float = 2.0
    force_exit_delay_s: float = 1.0

    def describe(self) -> dict[str, Any]:
        """Return a JSON-friendly view of the configuration."""
        data = asdict(self)
        data["critical_error_patterns"] = sorted(self.critical_error_patterns)
        for key in ("state_file", "pid_file", "log_file"):
            data[key] = str(data[key])
        data["cleanup_targets"] = list(self.cleanup_targets)
        return data
