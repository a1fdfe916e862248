"""Memory and uptime readings for the current process."""

from __future__ import annotations

import os
import time
from typing import Optional

import psutil

from fetchbot.supervisor.models import MemorySnapshot

_MB = 1024 * 1024
_process: Optional[psutil.Process] = None


def _current_process() -> psutil.Process:
    global _process
    if _process is None or _process.pid != os.getpid():
        _process = psutil.Process(os.getpid())
    return _process


def _to_mb(value: int) -> int:
    return round(value / _MB)


def sample_memory() -> MemorySnapshot:
    """Sample memory usage of this process.

    Python has no separate managed heap, so heap usage is the resident set
    and the heap total is the virtual size. ``external`` is the shared
    resident memory where the platform reports it.
    """
    info = _current_process().memory_info()
    return MemorySnapshot(
        heap_used=_to_mb(info.rss),
        heap_total=_to_mb(info.vms),
        rss=_to_mb(info.rss),
        external=_to_mb(getattr(info, "shared", 0)),
    )


def uptime_seconds() -> float:
    """Seconds since this process was created."""
    try:
        return round(max(0.0, time.time() - _current_process().create_time()), 3)
    except psutil.Error:
        return 0.0
